MASK64 = 0xffffffffffffffff
MASK32 = 0xffffffff

def to_u64(value):
    if isinstance(value, Int):
        return value.value
    return int(value) & MASK64

class Int(object):
    def __init__(self, value=0):
        self.value = to_u64(value)

    @classmethod
    def from_halves(cls, low, high=0):
        return cls(((high & MASK32) << 32) | (low & MASK32))

    def low(self):
        return self.value & MASK32

    def high(self):
        return self.value >> 32

    def halves(self):
        return self.low(), self.high()

    def _new(self, value):
        return Int(value)

    def add(self, other):
        return self._new(self.value + to_u64(other))

    def sub(self, other):
        return self._new(self.value - to_u64(other))

    def neg(self):
        return self._new(-self.value)

    def signed(self):
        if self.value >> 63:
            return self.value - (1 << 64)
        return self.value

    def to_bytes(self):
        return self.value.to_bytes(8, 'little')

    @classmethod
    def from_bytes(cls, data):
        return cls(int.from_bytes(data[:8], 'little'))

    def __add__(self, other):
        return self.add(other)

    def __sub__(self, other):
        return self.sub(other)

    def __neg__(self):
        return self.neg()

    def __and__(self, other):
        return self._new(self.value & to_u64(other))

    def __or__(self, other):
        return self._new(self.value | to_u64(other))

    def __xor__(self, other):
        return self._new(self.value ^ to_u64(other))

    def __invert__(self):
        return self._new(~self.value)

    def __eq__(self, other):
        if isinstance(other, (Int, int)):
            return self.value == to_u64(other)
        return NotImplemented

    def __hash__(self):
        return hash(self.value)

    def __int__(self):
        return self.value

    def __repr__(self):
        return "{}(0x{:x})".format(type(self).__name__, self.value)

    def __str__(self):
        return "0x{:016x}".format(self.value)

Int.Zero = Int(0)
