import logging
from typing import Dict, Tuple

from pydantic import BaseModel, Field, ValidationError, field_serializer, field_validator, model_validator

from Errors import ProfileError
from Gadget import Gadget, GadgetTable
from Memory import Addr
from Syscall import FREEBSD_SYSCALLS, SyscallTable

logger = logging.getLogger(__name__)

# jmp_buf layout of the libc setjmp()/longjmp() pair
CONTEXT_SIZE = 0xc8
CONTEXT_SP_OFFSET = 0x38
CONTEXT_PC_OFFSET = 0x80
# longjmp() writes rdi and the resume address below the restored rsp
RESUME_PADDING = 2

STACK_SIZE = 0x8000

def parse_offset(value):
    if isinstance(value, str):
        return int(value, 0)
    return value

class TargetProfile(BaseModel):
    """Per-build layout: where each gadget lives and how setjmp() lays out its context.

    On disk gadgets are grouped by module and keyed by instruction text:
    {"name": ..., "gadgets": {module: {"pop rax; ret": "0x1ac7b", ...}}, "syscalls": {...}}
    """

    name: str
    gadget_offsets: Dict[Gadget, Tuple[str, int]] = Field(alias="gadgets")
    syscalls: Dict[str, int] = Field(default_factory=lambda: dict(FREEBSD_SYSCALLS))
    context_size: int = Field(default=CONTEXT_SIZE, gt=0)
    context_sp_offset: int = Field(default=CONTEXT_SP_OFFSET, ge=0)
    context_pc_offset: int = Field(default=CONTEXT_PC_OFFSET, ge=0)
    resume_padding: int = Field(default=RESUME_PADDING, ge=0)
    stack_size: int = Field(default=STACK_SIZE, gt=0)

    model_config = {"populate_by_name": True, "frozen": True}

    def __init__(self, name, gadget_offsets, syscalls=None, **data):
        if syscalls is not None:
            data["syscalls"] = syscalls
        try:
            super(TargetProfile, self).__init__(name=name, gadget_offsets=gadget_offsets, **data)
        except ValidationError as e:
            raise ProfileError("invalid profile {!r}: {}".format(name, e))

    @field_validator("gadget_offsets", mode="before")
    @classmethod
    def flatten_gadgets(cls, value):
        if not isinstance(value, dict):
            return value
        offsets = dict()
        for key, entry in value.items():
            if isinstance(entry, dict):
                for text, offset in entry.items():
                    gadget = Gadget.parse(text)
                    if gadget in offsets:
                        raise ValueError("gadget {!r} defined twice".format(text))
                    offsets[gadget] = (key, parse_offset(offset))
            else:
                module, offset = entry
                gadget = key if isinstance(key, Gadget) else Gadget.parse(key)
                offsets[gadget] = (module, parse_offset(offset))
        return offsets

    @field_validator("syscalls", mode="before")
    @classmethod
    def parse_syscalls(cls, value):
        if value is None:
            return dict(FREEBSD_SYSCALLS)
        if not isinstance(value, dict):
            return value
        return dict((name, parse_offset(number)) for name, number in value.items())

    @field_validator("context_size", "context_sp_offset", "context_pc_offset",
                     "resume_padding", "stack_size", mode="before")
    @classmethod
    def parse_layout(cls, value):
        return parse_offset(value)

    @model_validator(mode="after")
    def check_layout(self):
        if (self.context_sp_offset + 8 > self.context_size or
                self.context_pc_offset + 8 > self.context_size):
            raise ValueError("context fields outside of context buffer")
        if self.stack_size % 8:
            raise ValueError("stack size must be a multiple of 8")
        return self

    @field_serializer("gadget_offsets")
    def group_gadgets(self, offsets):
        modules = dict()
        for gadget, (module, offset) in offsets.items():
            modules.setdefault(module, dict())[gadget.value] = "0x{:x}".format(offset)
        return modules

    @property
    def modules(self):
        return sorted(set(module for module, _ in self.gadget_offsets.values()))

    @classmethod
    def from_dict(cls, data):
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ProfileError("invalid profile: {}".format(e))

    def to_dict(self):
        return self.model_dump(by_alias=True)

    @classmethod
    def load(cls, path):
        with open(path) as fp:
            text = fp.read()
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise ProfileError("{}: {}".format(path, e))

    def save(self, path):
        with open(path, "w") as fp:
            fp.write(self.model_dump_json(by_alias=True, indent=2))

class RopContext(object):
    # everything resolved once per target; shared read-only by all chains
    def __init__(self, memory, profile, bases):
        self.memory = memory
        self.profile = profile
        self.bases = dict()
        for module, base in bases.items():
            if not isinstance(base, Addr):
                base = memory.addr(base)
            self.bases[module] = base
        self.gadgets = GadgetTable.from_offsets(self.bases, profile.gadget_offsets)
        self.syscalls = SyscallTable(profile.syscalls)
        logger.debug("%s: resolved %d gadgets over %d modules", profile.name,
                     len(self.gadgets), len(self.bases))
