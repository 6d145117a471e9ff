# Dex container model, laid out after the kaitai dex format (https://formats.kaitai.io/dex/).
# Id tables are read eagerly and range checked, everything living in the data section
# (strings, class data, code items, type lists) is read lazily and cached.
import bisect
import logging
from enum import IntFlag
from typing import Dict, List, Optional, Tuple

from kaitaistruct import KaitaiStruct

from errors import BadOffset, IndexOutOfRange, InvalidHeader, TruncatedData, UnsupportedEndianness
from helpers import utf16_key
from reader import DexReader
from utils import LogHandler

handler = LogHandler()
log = logging.getLogger(__name__)
log.addHandler(handler)
log.setLevel(logging.WARNING)

NO_INDEX = 0xFFFFFFFF


class DexFile(KaitaiStruct):
    """Android OS applications executables are typically stored in its own
    format, optimized for more efficient execution in Dalvik virtual
    machine.

    This format is loosely similar to Java .class file format and
    generally holds the similar set of data: i.e. classes, methods,
    fields, annotations, etc.

    .. seealso::
       Source - https://source.android.com/devices/tech/dalvik/dex-format
    """

    class AccessFlags(IntFlag):
        public = 0x1
        private = 0x2
        protected = 0x4
        static = 0x8
        final = 0x10
        synchronized = 0x20
        volatile = 0x40
        transient = 0x80
        native = 0x100
        interface = 0x200
        abstract = 0x400
        strict = 0x800
        synthetic = 0x1000
        annotation = 0x2000
        enum = 0x4000
        constructor = 0x10000
        declared_synchronized = 0x20000

    def __init__(self, _io, _parent=None, _root=None):
        self._io = _io
        self._parent = _parent
        self._root = _root if _root else self
        self._read()

    @classmethod
    def from_bytes(cls, buf):
        return cls(DexReader(bytes(buf)))

    parse = from_bytes

    def _read(self):
        self.header = DexFile.HeaderItem(self._io, self, self._root)
        header = self.header

        self.string_ids = self._read_table("string_ids", header.string_ids_off, header.string_ids_size,
                                           DexFile.StringIdItem, 4)
        self.type_ids = self._read_table("type_ids", header.type_ids_off, header.type_ids_size,
                                         DexFile.TypeIdItem, 4)
        self.proto_ids = self._read_table("proto_ids", header.proto_ids_off, header.proto_ids_size,
                                          DexFile.ProtoIdItem, 12)
        self.field_ids = self._read_table("field_ids", header.field_ids_off, header.field_ids_size,
                                          DexFile.FieldIdItem, 8)
        self.method_ids = self._read_table("method_ids", header.method_ids_off, header.method_ids_size,
                                           DexFile.MethodIdItem, 8)
        self.class_defs = self._read_table("class_defs", header.class_defs_off, header.class_defs_size,
                                           DexFile.ClassDefItem, 32)

        log.debug("dex %s: %d strings, %d types, %d protos, %d fields, %d methods, %d classes",
                  header.version_str, len(self.string_ids), len(self.type_ids), len(self.proto_ids),
                  len(self.field_ids), len(self.method_ids), len(self.class_defs))

    def _read_table(self, name, offset, size, item_class, item_size):
        if size == 0:
            return []
        if offset == 0 or offset + size * item_size > len(self._io.data):
            raise BadOffset(offset, "%s table" % name)

        io = self._io.fork(offset)
        items = []
        for _ in range(size):
            items.append(item_class(io, self, self._root))
        return items

    def check_index(self, table: str, index: int, optional: bool = False) -> int:
        if optional and index == NO_INDEX:
            return index
        size = len(getattr(self, table))
        if not 0 <= index < size:
            raise IndexOutOfRange(table, index, size)
        return index

    class HeaderItem(KaitaiStruct):

        MAGIC = b"dex\n"
        ENDIAN_CONSTANT = 0x12345678
        HEADER_SIZE = 0x70

        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.magic = self._io.read_bytes(4)
            if self.magic != self.MAGIC:
                raise InvalidHeader("bad magic %r" % self.magic)
            version = self._io.read_bytes(4)
            if not (version[:3].isdigit() and version[3] == 0):
                raise InvalidHeader("bad version %r" % version)
            self.version_str = version[:3].decode("ascii")
            self.checksum = self._io.read_uint()
            self.signature = self._io.read_bytes(20)
            self.file_size = self._io.read_uint()
            self.header_size = self._io.read_uint()
            self.endian_tag = self._io.read_uint()
            if self.endian_tag != self.ENDIAN_CONSTANT:
                raise UnsupportedEndianness(self.endian_tag)
            if self.header_size != self.HEADER_SIZE:
                raise InvalidHeader("unexpected header size %#x" % self.header_size)
            self.link_size = self._io.read_uint()
            self.link_off = self._io.read_uint()
            self.map_off = self._io.read_uint()
            self.string_ids_size = self._io.read_uint()
            self.string_ids_off = self._io.read_uint()
            self.type_ids_size = self._io.read_uint()
            self.type_ids_off = self._io.read_uint()
            self.proto_ids_size = self._io.read_uint()
            self.proto_ids_off = self._io.read_uint()
            self.field_ids_size = self._io.read_uint()
            self.field_ids_off = self._io.read_uint()
            self.method_ids_size = self._io.read_uint()
            self.method_ids_off = self._io.read_uint()
            self.class_defs_size = self._io.read_uint()
            self.class_defs_off = self._io.read_uint()
            self.data_size = self._io.read_uint()
            self.data_off = self._io.read_uint()

            available = len(self._io.data)
            if self.file_size > available:
                raise TruncatedData(0, self.file_size, available)
            for name in ("link", "data"):
                offset = getattr(self, name + "_off")
                if offset + getattr(self, name + "_size") > available:
                    raise BadOffset(offset, "%s section" % name)
            if self.map_off >= available:
                raise BadOffset(self.map_off, "map")

    class StringIdItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.string_data_off = self._io.read_uint()

        @property
        def value(self) -> str:
            if hasattr(self, '_m_value'):
                return self._m_value

            io = self._io.fork(self.string_data_off)
            self.utf16_size = io.read_uleb128()
            self._m_value = io.read_mutf8()
            return self._m_value

    class TypeIdItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.descriptor_idx = self._root.check_index("string_ids", self._io.read_uint())

        @property
        def type_name(self) -> str:
            return self._root.string_at(self.descriptor_idx)

    class ProtoIdItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.shorty_idx = self._root.check_index("string_ids", self._io.read_uint())
            self.return_type_idx = self._root.check_index("type_ids", self._io.read_uint())
            self.parameters_off = self._io.read_uint()

        @property
        def shorty_desc(self) -> str:
            """short-form descriptor string of this prototype, as pointed to by shorty_idx."""
            return self._root.string_at(self.shorty_idx)

        @property
        def params_types(self) -> List[str]:
            """list of parameter types for this prototype."""
            if hasattr(self, '_m_params_types'):
                return self._m_params_types

            self._m_params_types = []
            if self.parameters_off != 0:
                type_list = DexFile.TypeList(self._io.fork(self.parameters_off), self, self._root)
                self._m_params_types = type_list.values
            return self._m_params_types

        @property
        def return_type(self) -> str:
            """return type of this prototype."""
            return self._root.type_descriptor_at(self.return_type_idx)

        @property
        def descriptor(self) -> str:
            return "(%s)%s" % ("".join(self.params_types), self.return_type)

    class FieldIdItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.class_idx = self._root.check_index("type_ids", self._io.read_ushort())
            self.type_idx = self._root.check_index("type_ids", self._io.read_ushort())
            self.name_idx = self._root.check_index("string_ids", self._io.read_uint())

        @property
        def class_name(self) -> str:
            """the definer of this field."""
            return self._root.type_descriptor_at(self.class_idx)

        @property
        def type_name(self) -> str:
            """the type of this field."""
            return self._root.type_descriptor_at(self.type_idx)

        @property
        def field_name(self) -> str:
            """the name of this field."""
            return self._root.string_at(self.name_idx)

        @property
        def signature(self) -> str:
            return "%s->%s:%s" % (self.class_name, self.field_name, self.type_name)

    class MethodIdItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.class_idx = self._root.check_index("type_ids", self._io.read_ushort())
            self.proto_idx = self._root.check_index("proto_ids", self._io.read_ushort())
            self.name_idx = self._root.check_index("string_ids", self._io.read_uint())

        @property
        def class_name(self) -> str:
            """the definer of this method."""
            return self._root.type_descriptor_at(self.class_idx)

        @property
        def proto_id(self) -> "DexFile.ProtoIdItem":
            return self._root.proto_ids[self.proto_idx]

        @property
        def method_name(self) -> str:
            """the name of this method."""
            return self._root.string_at(self.name_idx)

        @property
        def signature(self) -> str:
            return "%s->%s%s" % (self.class_name, self.method_name, self.proto_id.descriptor)

    class TypeList(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.size = self._io.read_uint()
            self.list = []
            for _ in range(self.size):
                self.list.append(self._root.check_index("type_ids", self._io.read_ushort()))

        @property
        def values(self) -> List[str]:
            return [self._root.type_descriptor_at(type_idx) for type_idx in self.list]

    class ClassDefItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.class_idx = self._root.check_index("type_ids", self._io.read_uint())
            self.access_flags = DexFile.AccessFlags(self._io.read_uint())
            self.superclass_idx = self._root.check_index("type_ids", self._io.read_uint(), optional=True)
            self.interfaces_off = self._io.read_uint()
            self.source_file_idx = self._root.check_index("string_ids", self._io.read_uint(), optional=True)
            self.annotations_off = self._io.read_uint()
            self.class_data_off = self._io.read_uint()
            self.static_values_off = self._io.read_uint()

        @property
        def type_name(self) -> str:
            return self._root.type_descriptor_at(self.class_idx)

        @property
        def superclass(self) -> Optional[str]:
            if self.superclass_idx == NO_INDEX:
                return None
            return self._root.type_descriptor_at(self.superclass_idx)

        @property
        def source_file(self) -> Optional[str]:
            if self.source_file_idx == NO_INDEX:
                return None
            return self._root.string_at(self.source_file_idx)

        @property
        def interfaces(self) -> List[str]:
            if hasattr(self, '_m_interfaces'):
                return self._m_interfaces

            self._m_interfaces = []
            if self.interfaces_off != 0:
                self._m_interfaces = DexFile.TypeList(self._io.fork(self.interfaces_off), self, self._root).values
            return self._m_interfaces

        @property
        def class_data(self) -> Optional["DexFile.ClassDataItem"]:
            if hasattr(self, '_m_class_data'):
                return self._m_class_data

            self._m_class_data = None
            if self.class_data_off != 0:
                self._m_class_data = DexFile.ClassDataItem(self._io.fork(self.class_data_off), self, self._root)
            return self._m_class_data

        @property
        def methods(self) -> List["DexFile.EncodedMethod"]:
            if not self.class_data:
                return []
            return self.class_data.direct_methods + self.class_data.virtual_methods

        def find_method(self, name: str) -> List["DexFile.EncodedMethod"]:
            return [method for method in self.methods if method.name == name]

    class ClassDataItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.static_fields_size = self._io.read_uleb128()
            self.instance_fields_size = self._io.read_uleb128()
            self.direct_methods_size = self._io.read_uleb128()
            self.virtual_methods_size = self._io.read_uleb128()

            self.static_fields = self._read_members(DexFile.EncodedField, self.static_fields_size)
            self.instance_fields = self._read_members(DexFile.EncodedField, self.instance_fields_size)
            self.direct_methods = self._read_members(DexFile.EncodedMethod, self.direct_methods_size)
            self.virtual_methods = self._read_members(DexFile.EncodedMethod, self.virtual_methods_size)
            for method in self.virtual_methods:
                method.is_virtual = True

        def _read_members(self, member_class, count):
            # member indices are stored as deltas from the previous entry of the same list
            members = []
            previous = 0
            for _ in range(count):
                member = member_class(self._io, self, self._root, previous)
                previous = member.index
                members.append(member)
            return members

    class EncodedField(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None, previous=0):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read(previous)

        def _read(self, previous):
            self.field_idx_diff = self._io.read_uleb128()
            self.access_flags = DexFile.AccessFlags(self._io.read_uleb128())
            self.index = self._root.check_index("field_ids", previous + self.field_idx_diff)

        @property
        def field_id(self) -> "DexFile.FieldIdItem":
            return self._root.field_ids[self.index]

    class EncodedMethod(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None, previous=0):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self.is_virtual = False
            self._read(previous)

        def _read(self, previous):
            self.method_idx_diff = self._io.read_uleb128()
            self.access_flags = DexFile.AccessFlags(self._io.read_uleb128())
            self.code_off = self._io.read_uleb128()
            self.index = self._root.check_index("method_ids", previous + self.method_idx_diff)

        @property
        def method_id(self) -> "DexFile.MethodIdItem":
            return self._root.method_ids[self.index]

        @property
        def name(self) -> str:
            return self.method_id.method_name

        @property
        def class_name(self) -> str:
            return self.method_id.class_name

        @property
        def signature(self) -> str:
            """name(params)ret, enough to tell overloads apart"""
            return self.name + self.method_id.proto_id.descriptor

        @property
        def code(self) -> Optional["DexFile.CodeItem"]:
            if hasattr(self, '_m_code'):
                return self._m_code

            self._m_code = None
            if self.code_off != 0:
                self._m_code = DexFile.CodeItem(self._io.fork(self.code_off), self, self._root)
            return self._m_code

    class CodeItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.registers_size = self._io.read_ushort()
            self.ins_size = self._io.read_ushort()
            self.outs_size = self._io.read_ushort()
            self.tries_size = self._io.read_ushort()
            self.debug_info_off = self._io.read_uint()
            self.insns_size = self._io.read_uint()
            self.insns = self._io.read_units(self.insns_size)

            self.tries = []
            self.handlers: Dict[int, DexFile.EncodedCatchHandler] = {}
            if not self.tries_size:
                return

            if self.insns_size % 2:
                self._io.read_ushort()  # padding

            for _ in range(self.tries_size):
                self.tries.append(DexFile.TryItem(self._io, self, self._root))

            # handler_off in a try_item is relative to the start of the handler list
            list_start = self._io.pos()
            handlers_size = self._io.read_uleb128()
            for _ in range(handlers_size):
                offset = self._io.pos() - list_start
                self.handlers[offset] = DexFile.EncodedCatchHandler(self._io, self, self._root)

            for try_item in self.tries:
                if try_item.handler_off not in self.handlers:
                    raise BadOffset(try_item.handler_off, "catch handler")

    class TryItem(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            self.start_addr = self._io.read_uint()
            self.insn_count = self._io.read_ushort()
            self.handler_off = self._io.read_ushort()

        @property
        def end_addr(self) -> int:
            return self.start_addr + self.insn_count

        def __contains__(self, address: int) -> bool:
            return self.start_addr <= address < self.end_addr

    class EncodedCatchHandler(KaitaiStruct):
        def __init__(self, _io, _parent=None, _root=None):
            self._io = _io
            self._parent = _parent
            self._root = _root if _root else self
            self._read()

        def _read(self):
            # a non-positive size means a catch-all handler follows the typed ones
            self.size = self._io.read_sleb128()
            self.pairs: List[Tuple[int, int]] = []
            for _ in range(abs(self.size)):
                type_idx = self._root.check_index("type_ids", self._io.read_uleb128())
                self.pairs.append((type_idx, self._io.read_uleb128()))
            self.catch_all_addr = self._io.read_uleb128() if self.size <= 0 else None

        @property
        def catches(self) -> List[Tuple[Optional[str], int]]:
            """(exception descriptor, handler address) in declaration order, None for catch-all"""
            result = [(self._root.type_descriptor_at(type_idx), addr) for type_idx, addr in self.pairs]
            if self.catch_all_addr is not None:
                result.append((None, self.catch_all_addr))
            return result

    def string_at(self, index: int) -> str:
        self.check_index("string_ids", index)
        return self.string_ids[index].value

    def type_descriptor_at(self, index: int) -> str:
        self.check_index("type_ids", index)
        return self.type_ids[index].type_name

    def proto_at(self, index: int) -> "DexFile.ProtoIdItem":
        self.check_index("proto_ids", index)
        return self.proto_ids[index]

    def field_at(self, index: int) -> "DexFile.FieldIdItem":
        self.check_index("field_ids", index)
        return self.field_ids[index]

    def method_at(self, index: int) -> "DexFile.MethodIdItem":
        self.check_index("method_ids", index)
        return self.method_ids[index]

    def find_string(self, value: str) -> Optional[int]:
        """
        Index of `value` in the string table. The table must be sorted by UTF-16 code units,
        a binary search hit is verified and a miss falls back to a linear scan for files
        that do not honour the ordering.
        """
        key = utf16_key(value)
        index = bisect.bisect_left(range(len(self.string_ids)), key, key=lambda i: utf16_key(self.string_at(i)))
        if index < len(self.string_ids) and self.string_at(index) == value:
            return index

        log.debug("binary search missed %r, scanning string table", value)
        for index in range(len(self.string_ids)):
            if self.string_at(index) == value:
                return index
        return None

    def find_type(self, descriptor: str) -> Optional[int]:
        string_idx = self.find_string(descriptor)
        if string_idx is None:
            return None

        index = bisect.bisect_left(self.type_ids, string_idx, key=lambda type_id: type_id.descriptor_idx)
        if index < len(self.type_ids) and self.type_ids[index].descriptor_idx == string_idx:
            return index

        for index, type_id in enumerate(self.type_ids):
            if type_id.descriptor_idx == string_idx:
                return index
        return None

    def find_class(self, descriptor: str) -> Optional["DexFile.ClassDefItem"]:
        type_idx = self.find_type(descriptor)
        if type_idx is None:
            return None

        # class_defs are ordered by inheritance, not by name
        for class_def in self.class_defs:
            if class_def.class_idx == type_idx:
                return class_def
        return None

    def find_method(self, class_def: "DexFile.ClassDefItem", name: str) -> List["DexFile.EncodedMethod"]:
        return class_def.find_method(name)
