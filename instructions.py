import logging
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Tuple

from errors import MalformedInstruction, MalformedPayload, UnknownOpcode
from helpers import escape_string, lsb, msb, nibble_at, twos_complement, units_to_int
from utils import LogHandler

handler = LogHandler()
log = logging.getLogger(__name__)
log.addHandler(handler)
log.setLevel(logging.WARNING)


class Format(Enum):
    """
    Instruction formats, see https://source.android.com/docs/core/runtime/instruction-formats
    The first digit of the name is the width in code units.
    """
    F10x = "10x"
    F12x = "12x"
    F11n = "11n"
    F11x = "11x"
    F10t = "10t"
    F20t = "20t"
    F22x = "22x"
    F21t = "21t"
    F21s = "21s"
    F21h = "21h"
    F21c = "21c"
    F23x = "23x"
    F22b = "22b"
    F22t = "22t"
    F22s = "22s"
    F22c = "22c"
    F30t = "30t"
    F32x = "32x"
    F31i = "31i"
    F31t = "31t"
    F31c = "31c"
    F35c = "35c"
    F3rc = "3rc"
    F45cc = "45cc"
    F4rcc = "4rcc"
    F51l = "51l"
    PAYLOAD = "payload"

    @property
    def units(self) -> int:
        return 0 if self is Format.PAYLOAD else int(self.value[0])


class Ref(Enum):
    STRING = "string"
    TYPE = "type"
    FIELD = "field"
    METHOD = "method"
    PROTO = "proto"
    CALL_SITE = "call_site"
    METHOD_HANDLE = "method_handle"


class Flow(Enum):
    NEXT = "next"
    GOTO = "goto"
    BRANCH = "branch"
    SWITCH = "switch"
    RETURN = "return"
    THROW = "throw"


class OpcodeInfo(NamedTuple):
    mnemonic: str
    fmt: Format
    ref: Optional[Ref] = None
    flow: Flow = Flow.NEXT


OPCODES: Dict[int, OpcodeInfo] = {
    0x00: OpcodeInfo("nop", Format.F10x),
    0x01: OpcodeInfo("move", Format.F12x),
    0x02: OpcodeInfo("move/from16", Format.F22x),
    0x03: OpcodeInfo("move/16", Format.F32x),
    0x04: OpcodeInfo("move-wide", Format.F12x),
    0x05: OpcodeInfo("move-wide/from16", Format.F22x),
    0x06: OpcodeInfo("move-wide/16", Format.F32x),
    0x07: OpcodeInfo("move-object", Format.F12x),
    0x08: OpcodeInfo("move-object/from16", Format.F22x),
    0x09: OpcodeInfo("move-object/16", Format.F32x),
    0x0a: OpcodeInfo("move-result", Format.F11x),
    0x0b: OpcodeInfo("move-result-wide", Format.F11x),
    0x0c: OpcodeInfo("move-result-object", Format.F11x),
    0x0d: OpcodeInfo("move-exception", Format.F11x),
    0x0e: OpcodeInfo("return-void", Format.F10x, flow=Flow.RETURN),
    0x0f: OpcodeInfo("return", Format.F11x, flow=Flow.RETURN),
    0x10: OpcodeInfo("return-wide", Format.F11x, flow=Flow.RETURN),
    0x11: OpcodeInfo("return-object", Format.F11x, flow=Flow.RETURN),
    0x12: OpcodeInfo("const/4", Format.F11n),
    0x13: OpcodeInfo("const/16", Format.F21s),
    0x14: OpcodeInfo("const", Format.F31i),
    0x15: OpcodeInfo("const/high16", Format.F21h),
    0x16: OpcodeInfo("const-wide/16", Format.F21s),
    0x17: OpcodeInfo("const-wide/32", Format.F31i),
    0x18: OpcodeInfo("const-wide", Format.F51l),
    0x19: OpcodeInfo("const-wide/high16", Format.F21h),
    0x1a: OpcodeInfo("const-string", Format.F21c, Ref.STRING),
    0x1b: OpcodeInfo("const-string/jumbo", Format.F31c, Ref.STRING),
    0x1c: OpcodeInfo("const-class", Format.F21c, Ref.TYPE),
    0x1d: OpcodeInfo("monitor-enter", Format.F11x),
    0x1e: OpcodeInfo("monitor-exit", Format.F11x),
    0x1f: OpcodeInfo("check-cast", Format.F21c, Ref.TYPE),
    0x20: OpcodeInfo("instance-of", Format.F22c, Ref.TYPE),
    0x21: OpcodeInfo("array-length", Format.F12x),
    0x22: OpcodeInfo("new-instance", Format.F21c, Ref.TYPE),
    0x23: OpcodeInfo("new-array", Format.F22c, Ref.TYPE),
    0x24: OpcodeInfo("filled-new-array", Format.F35c, Ref.TYPE),
    0x25: OpcodeInfo("filled-new-array/range", Format.F3rc, Ref.TYPE),
    0x26: OpcodeInfo("fill-array-data", Format.F31t),
    0x27: OpcodeInfo("throw", Format.F11x, flow=Flow.THROW),
    0x28: OpcodeInfo("goto", Format.F10t, flow=Flow.GOTO),
    0x29: OpcodeInfo("goto/16", Format.F20t, flow=Flow.GOTO),
    0x2a: OpcodeInfo("goto/32", Format.F30t, flow=Flow.GOTO),
    0x2b: OpcodeInfo("packed-switch", Format.F31t, flow=Flow.SWITCH),
    0x2c: OpcodeInfo("sparse-switch", Format.F31t, flow=Flow.SWITCH),
    0xfa: OpcodeInfo("invoke-polymorphic", Format.F45cc, Ref.METHOD),
    0xfb: OpcodeInfo("invoke-polymorphic/range", Format.F4rcc, Ref.METHOD),
    0xfc: OpcodeInfo("invoke-custom", Format.F35c, Ref.CALL_SITE),
    0xfd: OpcodeInfo("invoke-custom/range", Format.F3rc, Ref.CALL_SITE),
    0xfe: OpcodeInfo("const-method-handle", Format.F21c, Ref.METHOD_HANDLE),
    0xff: OpcodeInfo("const-method-type", Format.F21c, Ref.PROTO),
}


def _family(first: int, names: List[str], fmt: Format, ref: Optional[Ref] = None, flow: Flow = Flow.NEXT) -> None:
    for i, name in enumerate(names):
        OPCODES[first + i] = OpcodeInfo(name, fmt, ref, flow)


TYPE_SUFFIXES = ["", "-wide", "-object", "-boolean", "-byte", "-char", "-short"]
INVOKE_KINDS = ["virtual", "super", "direct", "static", "interface"]
INT_OPS = ["add", "sub", "mul", "div", "rem", "and", "or", "xor", "shl", "shr", "ushr"]
FLOAT_OPS = ["add", "sub", "mul", "div", "rem"]
BINOPS = ["%s-int" % op for op in INT_OPS] + ["%s-long" % op for op in INT_OPS] + \
         ["%s-float" % op for op in FLOAT_OPS] + ["%s-double" % op for op in FLOAT_OPS]
UNOPS = ["neg-int", "not-int", "neg-long", "not-long", "neg-float", "neg-double",
         "int-to-long", "int-to-float", "int-to-double", "long-to-int", "long-to-float", "long-to-double",
         "float-to-int", "float-to-long", "float-to-double", "double-to-int", "double-to-long", "double-to-float",
         "int-to-byte", "int-to-char", "int-to-short"]

_family(0x2d, ["cmpl-float", "cmpg-float", "cmpl-double", "cmpg-double", "cmp-long"], Format.F23x)
_family(0x32, ["if-eq", "if-ne", "if-lt", "if-ge", "if-gt", "if-le"], Format.F22t, flow=Flow.BRANCH)
_family(0x38, ["if-eqz", "if-nez", "if-ltz", "if-gez", "if-gtz", "if-lez"], Format.F21t, flow=Flow.BRANCH)
_family(0x44, ["aget" + s for s in TYPE_SUFFIXES] + ["aput" + s for s in TYPE_SUFFIXES], Format.F23x)
_family(0x52, ["iget" + s for s in TYPE_SUFFIXES] + ["iput" + s for s in TYPE_SUFFIXES], Format.F22c, Ref.FIELD)
_family(0x60, ["sget" + s for s in TYPE_SUFFIXES] + ["sput" + s for s in TYPE_SUFFIXES], Format.F21c, Ref.FIELD)
_family(0x6e, ["invoke-" + kind for kind in INVOKE_KINDS], Format.F35c, Ref.METHOD)
_family(0x74, ["invoke-%s/range" % kind for kind in INVOKE_KINDS], Format.F3rc, Ref.METHOD)
_family(0x7b, UNOPS, Format.F12x)
_family(0x90, BINOPS, Format.F23x)
_family(0xb0, [op + "/2addr" for op in BINOPS], Format.F12x)
_family(0xd0, ["add-int/lit16", "rsub-int", "mul-int/lit16", "div-int/lit16", "rem-int/lit16",
               "and-int/lit16", "or-int/lit16", "xor-int/lit16"], Format.F22s)
_family(0xd8, ["%s-int/lit8" % op for op in INT_OPS[:1]] + ["rsub-int/lit8"] +
        ["%s-int/lit8" % op for op in INT_OPS[2:]], Format.F22b)


class Instruction:

    is_payload = False

    def __init__(self, address: int, opcode: int, info: OpcodeInfo):
        self.address = address
        self.opcode = opcode
        self.mnemonic = info.mnemonic
        self.fmt = info.fmt
        self.ref = info.ref
        self.flow = info.flow
        self.width = info.fmt.units

        self.registers: Tuple[int, ...] = ()
        self.literal: Optional[int] = None
        self.index: Optional[int] = None
        # second pool reference of invoke-polymorphic
        self.proto_index: Optional[int] = None
        # relative to address, in code units
        self.branch: Optional[int] = None
        self.payload: Optional["Payload"] = None

    @property
    def byte_offset(self) -> int:
        return self.address * 2

    @property
    def next_address(self) -> int:
        return self.address + self.width

    @property
    def target(self) -> Optional[int]:
        if self.branch is None:
            return None
        return self.address + self.branch

    @property
    def cases(self) -> List[Tuple[int, int]]:
        """(case value, absolute target) pairs of a switch, lowest value first"""
        if self.flow is not Flow.SWITCH or self.payload is None:
            return []
        return self.payload.cases(self.address)

    def decode(self, units: List[int]) -> None:
        end = self.address + self.width
        if end > len(units):
            raise MalformedInstruction("%s truncated by the end of the code" % self.mnemonic, self.address)
        u = units[self.address:end]
        aa = u[0] >> 8

        match self.fmt:
            case Format.F10x:
                pass
            case Format.F12x:
                self.registers = (lsb(aa), msb(aa))
            case Format.F11n:
                self.registers = (lsb(aa),)
                self.literal = twos_complement(msb(aa), 0.5)
            case Format.F11x:
                self.registers = (aa,)
            case Format.F10t:
                self.branch = twos_complement(aa, 1)
            case Format.F20t:
                self.branch = twos_complement(u[1], 2)
            case Format.F22x:
                self.registers = (aa, u[1])
            case Format.F21t:
                self.registers = (aa,)
                self.branch = twos_complement(u[1], 2)
            case Format.F21s:
                self.registers = (aa,)
                self.literal = twos_complement(u[1], 2)
            case Format.F21h:
                self.registers = (aa,)
                # const/high16 fills the top of 32 bits, const-wide/high16 the top of 64
                shift = 48 if self.opcode == 0x19 else 16
                self.literal = twos_complement(u[1], 2) << shift
            case Format.F21c:
                self.registers = (aa,)
                self.index = u[1]
            case Format.F23x:
                self.registers = (aa, u[1] & 0xff, u[1] >> 8)
            case Format.F22b:
                self.registers = (aa, u[1] & 0xff)
                self.literal = twos_complement(u[1] >> 8, 1)
            case Format.F22t:
                self.registers = (lsb(aa), msb(aa))
                self.branch = twos_complement(u[1], 2)
            case Format.F22s:
                self.registers = (lsb(aa), msb(aa))
                self.literal = twos_complement(u[1], 2)
            case Format.F22c:
                self.registers = (lsb(aa), msb(aa))
                self.index = u[1]
            case Format.F30t:
                self.branch = twos_complement(units_to_int(u[1:3]), 4)
            case Format.F32x:
                self.registers = (u[1], u[2])
            case Format.F31i:
                self.registers = (aa,)
                self.literal = twos_complement(units_to_int(u[1:3]), 4)
            case Format.F31t:
                self.registers = (aa,)
                self.branch = twos_complement(units_to_int(u[1:3]), 4)
            case Format.F31c:
                self.registers = (aa,)
                self.index = units_to_int(u[1:3])
            case Format.F35c | Format.F45cc:
                count = msb(aa)
                if count > 5:
                    raise MalformedInstruction("%s with %d argument registers" % (self.mnemonic, count), self.address)
                args = (nibble_at(u[2], 0), nibble_at(u[2], 1), nibble_at(u[2], 2), nibble_at(u[2], 3), lsb(aa))
                self.registers = args[:count]
                self.index = u[1]
                if self.fmt is Format.F45cc:
                    self.proto_index = u[3]
            case Format.F3rc | Format.F4rcc:
                self.registers = tuple(range(u[2], u[2] + aa))
                self.index = u[1]
                if self.fmt is Format.F4rcc:
                    self.proto_index = u[3]
            case Format.F51l:
                self.registers = (aa,)
                self.literal = twos_complement(units_to_int(u[1:5]), 8)
            case Format.PAYLOAD:
                raise MalformedPayload("payload decoded as an instruction", self.address)

    def render(self, lookup=None) -> str:
        """
        Smali-like text of the instruction. `lookup` is a DexFile used to resolve pool references,
        without it references are printed as kind@index.
        """
        operands = []
        if self.fmt in (Format.F35c, Format.F45cc, Format.F3rc, Format.F4rcc):
            operands.append("{%s}" % ", ".join("v%d" % reg for reg in self.registers))
        else:
            operands.extend("v%d" % reg for reg in self.registers)

        if self.literal is not None:
            operands.append(hex(self.literal))
        if self.branch is not None:
            operands.append("%+d" % self.branch)
        if self.index is not None:
            operands.append(self._render_ref(self.ref, self.index, lookup))
        if self.proto_index is not None:
            operands.append(self._render_ref(Ref.PROTO, self.proto_index, lookup))

        if not operands:
            return self.mnemonic
        return "%s %s" % (self.mnemonic, ", ".join(operands))

    @staticmethod
    def _render_ref(ref: Ref, index: int, lookup) -> str:
        if lookup is None:
            return "%s@%x" % (ref.value, index)

        match ref:
            case Ref.STRING:
                return "\"%s\"" % escape_string(lookup.string_at(index))
            case Ref.TYPE:
                return lookup.type_descriptor_at(index)
            case Ref.FIELD:
                return lookup.field_at(index).signature
            case Ref.METHOD:
                return lookup.method_at(index).signature
            case Ref.PROTO:
                return lookup.proto_at(index).descriptor
            case _:
                return "%s@%x" % (ref.value, index)

    def print_instruction(self) -> None:
        log.debug("%04x: %s", self.address, self.render())

    def __repr__(self):
        return "<%s %04x %s>" % (type(self).__name__, self.address, self.render())


class Payload(Instruction):
    """
    Out of line data referenced by fill-array-data and the switch instructions.
    Lives in the instruction stream but is never executed.
    """

    is_payload = True
    mnemonic = "payload"

    def __init__(self, address: int):
        super().__init__(address, 0x00, OpcodeInfo(self.mnemonic, Format.PAYLOAD))

    def _require(self, units: List[int], width: int) -> None:
        available = len(units) - self.address
        if width > available:
            raise MalformedPayload("%s needs %d code units, only %d left" % (self.mnemonic, width, available),
                                   self.address)

    def cases(self, switch_address: int) -> List[Tuple[int, int]]:
        return []


class PackedSwitchPayload(Payload):

    mnemonic = "packed-switch-payload"

    def decode(self, units: List[int]) -> None:
        a = self.address
        self._require(units, 4)
        size = units[a + 1]
        self.first_key = twos_complement(units_to_int(units[a + 2:a + 4]), 4)
        self.width = 4 + size * 2
        self._require(units, self.width)
        self.targets = [twos_complement(units_to_int(units[a + 4 + i * 2:a + 6 + i * 2]), 4) for i in range(size)]

    def cases(self, switch_address: int) -> List[Tuple[int, int]]:
        return [(self.first_key + i, switch_address + target) for i, target in enumerate(self.targets)]

    def render(self, lookup=None) -> str:
        return "%s first_key=%d, %d targets" % (self.mnemonic, self.first_key, len(self.targets))


class SparseSwitchPayload(Payload):

    mnemonic = "sparse-switch-payload"

    def decode(self, units: List[int]) -> None:
        a = self.address
        self._require(units, 2)
        size = units[a + 1]
        self.width = 2 + size * 4
        self._require(units, self.width)
        values = [twos_complement(units_to_int(units[a + 2 + i * 2:a + 4 + i * 2]), 4) for i in range(size * 2)]
        self.keys = values[:size]
        self.targets = values[size:]

    def cases(self, switch_address: int) -> List[Tuple[int, int]]:
        # keys are stored sorted in valid files
        return sorted((key, switch_address + target) for key, target in zip(self.keys, self.targets))

    def render(self, lookup=None) -> str:
        return "%s %d keys" % (self.mnemonic, len(self.keys))


class FillArrayDataPayload(Payload):

    mnemonic = "fill-array-data-payload"

    def decode(self, units: List[int]) -> None:
        a = self.address
        self._require(units, 4)
        self.element_width = units[a + 1]
        self.size = units_to_int(units[a + 2:a + 4])
        byte_count = self.element_width * self.size
        self.width = 4 + (byte_count + 1) // 2
        self._require(units, self.width)
        raw = b"".join(unit.to_bytes(2, "little") for unit in units[a + 4:a + self.width])
        self.data = raw[:byte_count]

    @property
    def values(self) -> List[int]:
        w = self.element_width
        if not w:
            return []
        return [int.from_bytes(self.data[i * w:(i + 1) * w], "little") for i in range(self.size)]

    def render(self, lookup=None) -> str:
        return "%s %d x %d bytes" % (self.mnemonic, self.size, self.element_width)


PAYLOADS = {
    0x0100: PackedSwitchPayload,
    0x0200: SparseSwitchPayload,
    0x0300: FillArrayDataPayload,
}

# instruction opcode -> payload kind it must point at
PAYLOAD_USERS = {
    0x26: FillArrayDataPayload,
    0x2b: PackedSwitchPayload,
    0x2c: SparseSwitchPayload,
}


def build_instruction(units: List[int], address: int) -> Instruction:
    unit = units[address]
    opcode = unit & 0xff

    if opcode == 0x00 and unit >> 8:
        payload_class = PAYLOADS.get(unit)
        if payload_class is None:
            raise MalformedInstruction("nop with unknown payload identifier %#06x" % unit, address)
        return payload_class(address)

    info = OPCODES.get(opcode)
    if info is None:
        raise UnknownOpcode(opcode, address)
    return Instruction(address, opcode, info)


def attach_payloads(instructions: List[Instruction]) -> None:
    payloads = {instruction.address: instruction for instruction in instructions if instruction.is_payload}

    for instruction in instructions:
        expected = PAYLOAD_USERS.get(instruction.opcode) if not instruction.is_payload else None
        if expected is None:
            continue

        payload = payloads.get(instruction.target)
        if not isinstance(payload, expected):
            raise MalformedPayload("%s points at %04x, which is not a %s" % (
                instruction.mnemonic, instruction.target, expected.mnemonic), instruction.address)
        if payload.address % 2:
            raise MalformedPayload("%s at %04x is not 4-byte aligned" % (payload.mnemonic, payload.address),
                                   instruction.address)
        instruction.payload = payload


def decode(code_units) -> List[Instruction]:
    """
    Decode a method's code units into instructions ordered by address. Payloads are kept in the
    sequence (flagged with is_payload) so the widths add up to the size of the code.
    """
    units = list(code_units)
    instructions: List[Instruction] = []

    address = 0
    while address < len(units):
        instruction = build_instruction(units, address)
        instruction.decode(units)
        instruction.print_instruction()
        instructions.append(instruction)
        address += instruction.width

    attach_payloads(instructions)
    log.debug("decoded %d instructions from %d code units", len(instructions), len(units))
    return instructions
