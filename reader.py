import logging
import struct
from io import BytesIO
from typing import List

from packaging.version import parse as parse_version
import kaitaistruct
from kaitaistruct import KaitaiStream

from errors import BadOffset, InvalidEncoding, TruncatedData
from utils import LogHandler

if parse_version(kaitaistruct.__version__) < parse_version('0.9'):
    raise Exception(
        "Incompatible Kaitai Struct Python API: 0.9 or later is required, but you have %s" % (kaitaistruct.__version__))

handler = LogHandler()
log = logging.getLogger(__name__)
log.addHandler(handler)
log.setLevel(logging.WARNING)


def decode_mutf8(byte_str: bytes, offset: int = 0) -> str:
    """
    Decode the "modified" UTF-8 used by dex string data: NUL is stored as C0 80 and characters
    outside of the BMP are stored as two three-byte surrogates.
    """
    result = []
    i = 0

    while i < len(byte_str):
        byte = byte_str[i]

        if byte & 0b10000000 == 0:  # 1-byte character
            result.append(chr(byte))
            i += 1
        elif byte & 0b11100000 == 0b11000000:  # 2-byte character
            if i + 1 >= len(byte_str) or byte_str[i + 1] & 0b11000000 != 0b10000000:
                raise InvalidEncoding(offset + i, "truncated MUTF-8 sequence")
            char_code = ((byte & 0b00011111) << 6) | (byte_str[i + 1] & 0b00111111)
            result.append(chr(char_code))
            i += 2
        elif byte & 0b11110000 == 0b11100000:  # 3-byte character
            if i + 2 >= len(byte_str) or any(b & 0b11000000 != 0b10000000 for b in byte_str[i + 1:i + 3]):
                raise InvalidEncoding(offset + i, "truncated MUTF-8 sequence")
            char_code = ((byte & 0b00001111) << 12) | ((byte_str[i + 1] & 0b00111111) << 6) | (byte_str[i + 2] & 0b00111111)
            result.append(chr(char_code))
            i += 3
        else:
            raise InvalidEncoding(offset + i, "invalid MUTF-8 lead byte %#04x" % byte)

    # glue surrogate pairs back together, lone surrogates are kept as they are
    return "".join(result).encode("utf-16-le", "surrogatepass").decode("utf-16-le", "surrogatepass")


class DexReader(KaitaiStream):
    """Bounds checked little-endian cursor over an in-memory dex image."""

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        super().__init__(BytesIO(data))
        self.seek(offset)

    def remaining(self) -> int:
        return len(self.data) - self.pos()

    def seek(self, n):
        if not 0 <= n <= len(self.data):
            raise BadOffset(n)
        super().seek(n)

    def fork(self, offset: int) -> "DexReader":
        """A second cursor over the same buffer, leaving this one where it is."""
        return DexReader(self.data, offset)

    def _require(self, count: int) -> None:
        if count > self.remaining():
            raise TruncatedData(self.pos(), count, self.remaining())

    def read_bytes(self, n):
        self._require(n)
        try:
            return super().read_bytes(n)
        except EOFError as ex:
            raise TruncatedData(self.pos(), n, self.remaining()) from ex

    def read_ubyte(self) -> int:
        self._require(1)
        return self.read_u1()

    def read_byte(self) -> int:
        self._require(1)
        return self.read_s1()

    def read_ushort(self) -> int:
        self._require(2)
        return self.read_u2le()

    def read_short(self) -> int:
        self._require(2)
        return self.read_s2le()

    def read_uint(self) -> int:
        self._require(4)
        return self.read_u4le()

    def read_int(self) -> int:
        self._require(4)
        return self.read_s4le()

    def read_ulong(self) -> int:
        self._require(8)
        return self.read_u8le()

    def read_long(self) -> int:
        self._require(8)
        return self.read_s8le()

    def read_uleb128(self) -> int:
        start = self.pos()
        value = 0
        for i in range(5):
            byte = self.read_ubyte()
            value |= (byte & 0x7f) << (i * 7)
            if byte & 0x80 == 0:
                return value
        raise InvalidEncoding(start, "uleb128 longer than 5 bytes")

    def read_uleb128p1(self) -> int:
        return self.read_uleb128() - 1

    def read_sleb128(self) -> int:
        start = self.pos()
        value = 0
        for i in range(5):
            byte = self.read_ubyte()
            value |= (byte & 0x7f) << (i * 7)
            if byte & 0x80 == 0:
                if byte & 0x40:
                    value -= 1 << ((i + 1) * 7)
                return value
        raise InvalidEncoding(start, "sleb128 longer than 5 bytes")

    def read_mutf8(self) -> str:
        start = self.pos()
        end = self.data.find(b"\x00", start)
        if end < 0:
            raise TruncatedData(start, self.remaining() + 1, self.remaining())
        raw = self.read_bytes(end - start)
        self.read_ubyte()  # terminator
        return decode_mutf8(raw, start)

    def read_units(self, count: int) -> List[int]:
        """Read `count` 16 bit code units."""
        return list(struct.unpack("<%dH" % count, self.read_bytes(count * 2)))
