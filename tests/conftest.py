import pytest

from Gadget import Gadget
from Memory import BufferMemory
from Pivot import PivotStrategy
from RopChain import RopChain
from Target import RopContext, TargetProfile

LIB_BASE = 0x7f0000400000

def make_offsets(skip=()):
    offsets = dict()
    for i, gadget in enumerate(Gadget):
        if gadget not in skip:
            offsets[gadget] = ("libtest", 0x1000 + i*0x10)
    return offsets

class RecordingPivot(PivotStrategy):
    def attach(self, stack_addr):
        self.stack_addr = stack_addr
        self.hijacks = 0

    def hijack(self):
        self.hijacks += 1

@pytest.fixture
def mem():
    return BufferMemory()

@pytest.fixture
def profile():
    return TargetProfile("test", make_offsets())

@pytest.fixture
def ctx(mem, profile):
    return RopContext(mem, profile, {"libtest": LIB_BASE})

@pytest.fixture
def chain(ctx):
    return RopChain(ctx, RecordingPivot(ctx, None))

def slots(chain):
    payload = chain.payload_str()
    return [int.from_bytes(payload[i:i+8], 'little') for i in range(0, len(payload), 8)]
