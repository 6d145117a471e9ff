from typing import List, Optional


class DalvikError(Exception):
    """Base class of everything the pipeline raises on bad input."""
    stage = "dalvik"


# binary format layer

class DexError(DalvikError):
    stage = "parse"


class InvalidHeader(DexError):
    pass


class UnsupportedEndianness(DexError):
    def __init__(self, tag: int):
        super().__init__("unsupported endian tag %#010x" % tag)
        self.tag = tag


class BadOffset(DexError):
    def __init__(self, offset: int, what: str = "offset"):
        super().__init__("%s %#x is outside of the file" % (what, offset))
        self.offset = offset


class IndexOutOfRange(DexError):
    def __init__(self, table: str, index: int, size: int):
        super().__init__("%s index %d out of range (table has %d entries)" % (table, index, size))
        self.table = table
        self.index = index
        self.size = size


class TruncatedData(DexError):
    def __init__(self, offset: int, requested: int, available: int):
        super().__init__("requested %d bytes at %#x, but only %d bytes available" % (requested, offset, available))
        self.offset = offset
        self.requested = requested
        self.available = available


class InvalidEncoding(DexError):
    def __init__(self, offset: int, reason: str):
        super().__init__("%s at %#x" % (reason, offset))
        self.offset = offset


# decode layer

class DecodeError(DalvikError):
    stage = "decode"

    def __init__(self, message: str, address: int):
        super().__init__("%s (at %04x)" % (message, address))
        self.address = address


class UnknownOpcode(DecodeError):
    def __init__(self, opcode: int, address: int):
        super().__init__("%#04x not defined" % opcode, address)
        self.opcode = opcode


class MalformedPayload(DecodeError):
    pass


class MalformedInstruction(DecodeError):
    pass


# cfg layer

class InvalidTarget(DalvikError):
    stage = "cfg"

    def __init__(self, address: int, reason: str):
        super().__init__("%s %04x is not an instruction boundary" % (reason, address))
        self.address = address
        self.reason = reason


# lookup layer

class MethodNotFound(DalvikError):
    stage = "lookup"


class ClassNotFound(MethodNotFound):
    def __init__(self, descriptor: str):
        super().__init__("class %s not found" % descriptor)
        self.descriptor = descriptor


class AmbiguousMethod(DalvikError):
    stage = "lookup"

    def __init__(self, name: str, signatures: List[str]):
        super().__init__("%s is ambiguous, candidates: %s" % (name, ", ".join(signatures)))
        self.name = name
        self.signatures = signatures


class NoCode(DalvikError):
    stage = "lookup"

    def __init__(self, signature: str, access: Optional[str] = None):
        message = "%s has no code" % signature
        if access:
            message += " (%s)" % access
        super().__init__(message)
        self.signature = signature


# emission layer

class IOFailure(DalvikError):
    stage = "emit"
