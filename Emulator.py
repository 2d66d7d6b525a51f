import logging

from triton import *
from keystone import *

from Errors import EmulationFault
from Gadget import Gadget
from Memory import Addr, Memory
from Syscall import FREEBSD_SYSCALLS
from Target import CONTEXT_PC_OFFSET, CONTEXT_SIZE, CONTEXT_SP_OFFSET, TargetProfile

logger = logging.getLogger(__name__)

HEAP_BASE = 0x200000000
STACK_TOP = 0x7ffff0000000
STACK_SIZE = 0x100000
EXIT_ADDR = 0xdead0000dead0000
MAX_STEPS = 200000
SYSCALL_OPCODE = b"\x0f\x05"
ENOSYS = 78

# jmp_buf slots, in order; rsp lives at CONTEXT_SP_OFFSET
CONTEXT_REGS = ["rax", "rbx", "rcx", "rdx", "rsi", "rdi", "rbp", "rsp",
                "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15"]

def setjmp_asm():
    lines = []
    for i, reg in enumerate(CONTEXT_REGS):
        if reg != "rsp":
            lines.append("mov qword ptr [rdi + 0x{:x}], {}".format(i*8, reg))
    lines += [
        "lea rax, [rsp + 8]",
        "mov qword ptr [rdi + 0x{:x}], rax".format(CONTEXT_SP_OFFSET),
        "mov rax, qword ptr [rsp]",
        "mov qword ptr [rdi + 0x{:x}], rax".format(CONTEXT_PC_OFFSET),
        "xor eax, eax",
        "ret",
    ]
    return "; ".join(lines)

# restores rax too, there is no second argument for the setjmp() result
def longjmp_asm():
    lines = []
    for i, reg in enumerate(CONTEXT_REGS):
        if reg not in ("rsp", "rdi"):
            lines.append("mov {}, qword ptr [rdi + 0x{:x}]".format(reg, i*8))
    lines += [
        "mov rsp, qword ptr [rdi + 0x{:x}]".format(CONTEXT_SP_OFFSET),
        "push qword ptr [rdi + 0x{:x}]".format(CONTEXT_PC_OFFSET),
        "push qword ptr [rdi + 0x{:x}]".format(CONTEXT_REGS.index("rdi")*8),
        "pop rdi",
        "ret",
    ]
    return "; ".join(lines)

LIBC_GADGETS = [Gadget.NEG_RAX, Gadget.MOV_RDX_RAX, Gadget.STORE_RCX_RSI,
                Gadget.SETJMP, Gadget.LONGJMP]
LIBKERNEL_GADGETS = [Gadget.SYSCALL]
WEBKIT_GADGETS = [g for g in Gadget if g not in LIBC_GADGETS + LIBKERNEL_GADGETS]

MODULES = [
    ("libwebkit", 0x800000000, WEBKIT_GADGETS),
    ("libc", 0x810000000, LIBC_GADGETS),
    ("libkernel", 0x820000000, LIBKERNEL_GADGETS),
]
HOST_BASE = 0x830000000

VTABLE_SLOT = 0x1c8
HOST_CODE = {
    # scrollLeft-style getter: impl->vtable[slot](...) with rsi = wrapper
    "vcall": "push rbp; mov rbp, rsp; mov rdi, qword ptr [rsi + 0x18]; "
             "mov rax, qword ptr [rdi]; call qword ptr [rax + 0x{:x}]; pop rbp; ret".format(VTABLE_SLOT),
    "callback": "push rbp; mov rbp, rsp; call qword ptr [rdi + 8]; pop rbp; ret",
    "getter": "xor eax, eax; ret",
    "handler": "mov eax, 1; ret",
}

def asm(code, addr=0):
    ks = Ks(KS_ARCH_X86, KS_MODE_64)
    return bytes(ks.asm(code, addr)[0])

class HostObject(object):
    def __init__(self, emu, entry, addr, reg):
        self.emu = emu
        self.entry = entry
        self.addr = addr
        self.reg = reg

    def trigger(self):
        return self.emu.call(self.entry, **{self.reg: self.addr})

class Emulator(Memory):
    def __init__(self, uid=1000, pid=77, max_steps=MAX_STEPS, trace=False):
        self.ctx = TritonContext()
        self.ctx.setArchitecture(ARCH.X86_64)
        self.ctx.setMode(MODE.ONLY_ON_SYMBOLIZED, True)
        self.uid = uid
        self.pid = pid
        self.max_steps = max_steps
        self.trace = trace
        self.heap = HEAP_BASE
        self.regions = []
        self.objects = dict()
        self.module_bases = dict()
        self.gadget_offsets = dict()
        self.host = dict()
        self.output = dict()
        self.closed = []
        self.syscall_log = []
        self.syscall_handlers = {
            FREEBSD_SYSCALLS['getuid']: lambda *args: self.uid,
            FREEBSD_SYSCALLS['getpid']: lambda *args: self.pid,
            FREEBSD_SYSCALLS['write']: self._sys_write,
            FREEBSD_SYSCALLS['close']: self._sys_close,
        }

        for name, base, gadgets in MODULES:
            self.load_module(name, base, gadgets)
        cursor = HOST_BASE
        for name, code in HOST_CODE.items():
            insns = asm(code, cursor)
            self.write(cursor, insns)
            self.host[name] = cursor
            cursor += (len(insns) + 0xf) & ~0xf
        self.regions.append((HOST_BASE, cursor))

    def read(self, addr, size):
        return bytes(self.ctx.getConcreteMemoryAreaValue(addr, size))

    def write(self, addr, data):
        self.ctx.setConcreteMemoryAreaValue(addr, bytes(data))

    def alloc(self, size):
        addr = self.heap
        self.heap += (size + 0xf) & ~0xf
        self.write(addr, b"\x00"*size)
        return Addr(self, addr)

    def addrof(self, obj):
        return Addr(self, self.objects[id(obj)])

    def load_module(self, name, base, gadgets):
        cursor = 0x1000
        for gadget in gadgets:
            if gadget == Gadget.SETJMP:
                code = setjmp_asm()
            elif gadget == Gadget.LONGJMP:
                code = longjmp_asm()
            else:
                code = gadget.value
            insns = asm(code, base + cursor)
            self.write(base + cursor, insns)
            self.gadget_offsets[gadget] = (name, cursor)
            cursor += len(insns)
            pad = -cursor & 0xf
            self.write(base + cursor, b"\xcc"*pad)
            cursor += pad
        self.module_bases[name] = base
        self.regions.append((base, base + cursor))
        logger.debug("loaded %s at 0x%x, %d gadgets", name, base, len(gadgets))

    def profile(self):
        return TargetProfile("emulated", self.gadget_offsets, FREEBSD_SYSCALLS,
                             context_size=CONTEXT_SIZE)

    def bases(self):
        return dict((name, Addr(self, base)) for name, base in self.module_bases.items())

    def new_dispatch_object(self):
        wrapper = self.alloc(0x40)
        impl = self.alloc(0x40)
        vtable = self.alloc(0x400)
        vtable.write64(VTABLE_SLOT, self.host["getter"])
        impl.write64(0, vtable)
        wrapper.write64(0x18, impl)
        obj = HostObject(self, self.host["vcall"], int(wrapper), "rsi")
        self.objects[id(obj)] = int(wrapper)
        return obj

    def new_callback_object(self):
        obj_addr = self.alloc(0x40)
        obj_addr.write64(8, self.host["handler"])
        obj_addr.write64(0x30, self.alloc(0x40))
        obj = HostObject(self, self.host["callback"], int(obj_addr), "rdi")
        self.objects[id(obj)] = int(obj_addr)
        return obj

    def is_executable(self, pc):
        for start, end in self.regions:
            if start <= pc < end:
                return True
        return False

    def reg(self, name):
        return self.ctx.getConcreteRegisterValue(getattr(self.ctx.registers, name))

    def set_reg(self, name, value):
        self.ctx.setConcreteRegisterValue(getattr(self.ctx.registers, name), value)

    def call(self, entry, **regs):
        for name, value in regs.items():
            self.set_reg(name, int(value))
        sp = STACK_TOP - 0x100
        self.write(sp, EXIT_ADDR.to_bytes(8, 'little'))
        self.set_reg("rsp", sp)
        self.set_reg("rbp", STACK_TOP)
        self.set_reg("rip", entry)

        pc = entry
        steps = 0
        while pc != EXIT_ADDR:
            if not self.is_executable(pc):
                raise EmulationFault("segmentation fault at 0x{:x}".format(pc), pc)
            steps += 1
            if steps > self.max_steps:
                raise EmulationFault("no return after {} instructions".format(steps), pc)
            opcode = self.read(pc, 16)
            if opcode.startswith(SYSCALL_OPCODE):
                self._syscall(pc)
                pc += len(SYSCALL_OPCODE)
                self.set_reg("rip", pc)
                continue
            inst = Instruction()
            inst.setOpcode(opcode)
            inst.setAddress(pc)
            self.ctx.processing(inst)
            if self.trace:
                logger.debug("%s", inst)
            pc = self.reg("rip")

        if self.reg("rsp") != sp + 8:
            raise EmulationFault("stack imbalance on return: rsp 0x{:x}".format(self.reg("rsp")), pc)
        logger.debug("host call 0x%x returned after %d instructions", entry, steps)
        return self.reg("rax")

    def _syscall(self, pc):
        num = self.reg("rax")
        args = [self.reg(r) for r in ("rdi", "rsi", "rdx", "r10", "r8", "r9")]
        self.syscall_log.append((num, args))
        handler = self.syscall_handlers.get(num)
        if handler is None:
            logger.debug("syscall %d not implemented", num)
            ret = -ENOSYS
        else:
            ret = handler(*args)
        self.set_reg("rax", ret & 0xffffffffffffffff)
        self.set_reg("rcx", pc + len(SYSCALL_OPCODE))

    def _sys_write(self, fd, buf, size, *args):
        self.output.setdefault(fd, bytearray()).extend(self.read(buf, size))
        return size

    def _sys_close(self, fd, *args):
        self.closed.append(fd)
        return 0
