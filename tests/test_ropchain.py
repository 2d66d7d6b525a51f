import pytest

from conftest import LIB_BASE, RecordingPivot, make_offsets, slots
from Errors import (AlreadySaved, ArgumentOverflow, ChainOverflow, EmptyChain,
                    InvalidBranchState, InvalidWidth, MissingGadget, MissingSyscall,
                    NotEmpty, NotSaved, StaleChain)
from Gadget import ARG_GADGETS, Gadget
from Int64 import Int
from RopChain import ChainState, RopChain
from Target import RopContext, TargetProfile

def test_push_encoding(chain, mem):
    values = [0, 1, 0x4142434445464748, -1, 0xffffffff]
    for i, value in enumerate(values):
        chain.push_constant(value)
        assert chain.position == (i + 1)*8
        raw = mem.read(int(chain.stack_addr) + i*8, 8)
        assert raw == Int(value).to_bytes()

def test_push_value_accepts_addr_and_int(chain, mem):
    buf = mem.alloc(8)
    chain.push_value(buf)
    chain.push_value(Int.from_halves(1, 2))
    assert slots(chain) == [int(buf), 0x200000001]

def test_push_gadget(chain, ctx):
    chain.push_gadget(Gadget.POP_RDI)
    assert slots(chain) == [int(ctx.gadgets[Gadget.POP_RDI])]
    assert chain.comments[0] == 'pop rdi; ret'

def test_push_call_layout(chain, ctx, mem):
    target = mem.addr(0x41414141)
    chain.push_call(target, 1, 2, 3)
    g = ctx.gadgets
    assert slots(chain) == [
        int(g[Gadget.POP_RDI]), 1,
        int(g[Gadget.POP_RSI]), 2,
        int(g[Gadget.POP_RDX]), 3,
        0x41414141,
    ]

def test_push_call_six_args(chain, ctx):
    chain.push_call(Gadget.SETJMP, 1, 2, 3, 4, 5, 6)
    values = slots(chain)
    assert values[0::2][:6] == [int(ctx.gadgets[g]) for g in ARG_GADGETS]
    assert values[1::2] == [1, 2, 3, 4, 5, 6]
    assert values[-1] == int(ctx.gadgets[Gadget.SETJMP])

def test_push_call_argument_overflow(chain):
    chain.push_constant(7)
    with pytest.raises(ArgumentOverflow):
        chain.push_call(Gadget.SETJMP, 1, 2, 3, 4, 5, 6, 7)
    assert chain.position == 8

def test_push_syscall_layout(chain, ctx):
    chain.push_syscall('socket', 2, 1, 0)
    g = ctx.gadgets
    assert slots(chain) == [
        int(g[Gadget.POP_RDI]), 2,
        int(g[Gadget.POP_RSI]), 1,
        int(g[Gadget.POP_RDX]), 0,
        int(g[Gadget.POP_RAX]), 97,
        int(g[Gadget.SYSCALL]),
    ]

def test_push_syscall_unknown(chain):
    with pytest.raises(MissingSyscall):
        chain.push_syscall('frobnicate')
    with pytest.raises(ArgumentOverflow):
        chain.push_syscall('getuid', 1, 2, 3, 4, 5, 6, 7)
    assert chain.position == 0

def test_push_get_retval(chain, ctx):
    chain.push_get_retval()
    assert slots(chain) == [int(ctx.gadgets[Gadget.POP_RDI]), int(chain.retval_addr),
                            int(ctx.gadgets[Gadget.STORE_RAX])]

def test_push_store_retval_dword(chain, ctx, mem):
    out = mem.alloc(4)
    chain.push_store_retval(out, 4)
    assert slots(chain)[-1] == int(ctx.gadgets[Gadget.STORE_EAX])

def test_push_store_retval_bad_width(chain, mem):
    out = mem.alloc(8)
    with pytest.raises(InvalidWidth):
        chain.push_store_retval(out, 2)
    assert chain.position == 0

def test_push_end_uses_pivot_epilogue(chain, ctx):
    chain.push_end()
    assert slots(chain) == [int(ctx.gadgets[Gadget.LEAVE])]

def test_missing_gadget_does_not_write(mem):
    profile = TargetProfile("partial", make_offsets(skip=[Gadget.ADC_ESI, Gadget.LONGJMP]))
    ctx = RopContext(mem, profile, {"libtest": LIB_BASE})
    chain = RopChain(ctx, RecordingPivot(ctx, None))
    chain.push_constant(0x1111)
    before = chain.payload_str()
    with pytest.raises(MissingGadget):
        chain.start_branch()
    assert not chain.is_branch_ctx
    with pytest.raises(MissingGadget):
        chain.push_restore(force=True)
    assert chain.position == 8
    assert chain.payload_str() == before

def test_branch_delta_is_region_length(chain):
    chain.start_branch()
    start = chain.position
    for i in range(5):
        chain.push_constant(i)
    delta_slot = chain.delta_slot
    chain.end_branch()
    assert chain.stack_addr.read64(delta_slot) == 5*8
    assert chain.position - start == 5*8

@pytest.mark.parametrize("count", [0, 1, 17])
def test_branch_delta_counts_every_push(chain, count):
    chain.start_branch()
    delta_slot = chain.delta_slot
    for _ in range(count):
        chain.push_gadget(Gadget.RET)
    chain.end_branch()
    assert chain.stack_addr.read64(delta_slot) == count*8

def test_branch_rsp_slot(chain):
    chain.push_constant(0)
    chain.start_branch()
    region = chain.position
    values = slots(chain)
    rsp_position = values[chain.rsp_slot // 8]
    collect_addr = values[chain.rsp_slot // 8 + 2]
    # rsp captured at the add gadget plus the distance to the region
    assert collect_addr + rsp_position == int(chain.stack_addr) + region
    assert collect_addr == int(chain.stack_addr) + chain.rsp_slot + 24

def test_branch_pivot_slot_is_last(chain, ctx):
    chain.start_branch()
    values = slots(chain)
    assert values[-2] == int(ctx.gadgets[Gadget.POP_RDI_JMP])
    assert values[-3] == int(chain.jmp_target)
    assert chain.jmp_target.read64(0) == ctx.gadgets[Gadget.POP_RSP]
    assert chain.jmp_target.read64(0x1d) == ctx.gadgets[Gadget.JOP4]

def test_branch_state_errors(chain):
    with pytest.raises(InvalidBranchState):
        chain.end_branch()
    chain.start_branch()
    position = chain.position
    with pytest.raises(InvalidBranchState):
        chain.start_branch()
    assert chain.position == position
    chain.end_branch()
    with pytest.raises(InvalidBranchState):
        chain.end_branch()

def test_restore_requires_save(chain):
    with pytest.raises(NotSaved):
        chain.push_restore()
    assert chain.position == 0
    chain.push_restore(force=True)
    assert chain.position > 0

def test_save_twice(chain, ctx):
    chain.push_save()
    assert chain.is_saved
    assert slots(chain) == [int(ctx.gadgets[Gadget.POP_RDI]), int(chain.context_addr),
                            int(ctx.gadgets[Gadget.SETJMP])]
    position = chain.position
    with pytest.raises(AlreadySaved):
        chain.push_save()
    assert chain.position == position
    chain.push_restore()
    assert not chain.is_saved
    chain.push_save()

def test_restore_layout(chain, ctx, profile):
    chain.push_save()
    start = chain.position
    chain.push_restore()
    values = slots(chain)[start // 8:]
    ctx_addr = int(chain.context_addr)
    # resume right after the padding longjmp() writes into
    assert values[1] == int(chain.stack_addr) + chain.position
    assert values[3] == ctx_addr + profile.context_sp_offset
    assert values[6] == int(ctx.gadgets[Gadget.RET])
    assert values[8] == ctx_addr + profile.context_pc_offset
    assert values[-profile.resume_padding - 1] == int(ctx.gadgets[Gadget.LONGJMP])
    assert values[-profile.resume_padding:] == [0]*profile.resume_padding

def test_call_needs_empty_chain(chain):
    chain.push_constant(0)
    with pytest.raises(NotEmpty):
        chain.call(Gadget.SETJMP, 1)
    with pytest.raises(NotEmpty):
        chain.syscall('getuid')
    assert chain.position == 8
    assert chain.pivot.hijacks == 0

def test_call_runs_and_cleans(chain):
    chain.call(Gadget.SETJMP, 1)
    assert chain.pivot.hijacks == 1
    assert chain.position == 0
    assert chain.state == ChainState.EMPTY
    chain.syscall('getuid')
    assert chain.pivot.hijacks == 2

def test_run_guards(chain):
    with pytest.raises(EmptyChain):
        chain.run()
    chain.start_branch()
    with pytest.raises(InvalidBranchState):
        chain.run()
    chain.end_branch()
    chain.push_end()
    chain.run()
    assert chain.pivot.hijacks == 1
    with pytest.raises(StaleChain):
        chain.run()
    with pytest.raises(StaleChain):
        chain.push_end()
    assert chain.pivot.hijacks == 1

def test_state_machine(chain):
    assert chain.state == ChainState.EMPTY
    chain.start_branch()
    assert chain.state == ChainState.BUILDING
    chain.end_branch()
    assert chain.state == ChainState.READY
    chain.run()
    assert chain.state == ChainState.STALE
    chain.clean()
    assert chain.state == ChainState.EMPTY

def test_executing_state(chain):
    seen = []
    chain.pivot.hijack = lambda: seen.append(chain.state)
    chain.push_end()
    chain.run()
    assert seen == [ChainState.EXECUTING]

def test_clean_keeps_buffers(chain):
    buffers = (int(chain.stack_addr), int(chain.retval_addr), int(chain.flag_addr),
               int(chain.context_addr))
    chain.push_save()
    chain.start_branch()
    chain.clean()
    assert chain.position == 0
    assert not chain.is_saved
    assert not chain.is_branch_ctx
    assert chain.delta_slot is None
    assert (int(chain.stack_addr), int(chain.retval_addr), int(chain.flag_addr),
            int(chain.context_addr)) == buffers

def test_chain_overflow(mem):
    profile = TargetProfile("small", make_offsets(), stack_size=0x20)
    ctx = RopContext(mem, profile, {"libtest": LIB_BASE})
    chain = RopChain(ctx, RecordingPivot(ctx, None))
    for i in range(4):
        chain.push_constant(i)
    with pytest.raises(ChainOverflow):
        chain.push_constant(4)
    with pytest.raises(ChainOverflow):
        chain.push_call(Gadget.SETJMP)
    assert chain.position == 0x20

def test_return_value(chain):
    chain.retval_addr.write64(0, Int.from_halves(0x4b435546, 7))
    assert chain.return_value.low() == 0x4b435546
    assert chain.return_value.high() == 7

def test_dump(chain, ctx, capsys):
    chain.push_gadget(Gadget.POP_RDI)
    chain.push_constant(0x41)
    chain.dump()
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "$RSP+0x0000 : 0x{:016x} # pop rdi; ret".format(int(ctx.gadgets[Gadget.POP_RDI]))
    assert out[1] == "$RSP+0x0008 : 0x0000000000000041"
