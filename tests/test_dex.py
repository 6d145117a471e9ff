import struct

import pytest

from cfg import build
from dex import NO_INDEX, DexFile
from errors import (BadOffset, DalvikError, DexError, IndexOutOfRange, InvalidHeader, TruncatedData,
                    UnsupportedEndianness)
from helpers import utf16_key
from instructions import decode
from tests.dexgen import ACC_ABSTRACT, ACC_PUBLIC, DexBuilder, Try, simple_dex

TRY_CATCH = [0x0012, 0x0071, 0x0000, 0x0000, 0x1112, 0x000e, 0x000d, 0x000e]


@pytest.fixture
def sample():
    builder = DexBuilder()
    builder.add_string("\uffff")
    builder.add_string("\U0001F600")
    builder.add_class("Lz/Last;")
    cls = builder.add_class("Lcom/example/Test;", source_file="Test.java", interfaces=("Ljava/lang/Runnable;",))
    cls.method("run", insns=TRY_CATCH, tries=[Try(0, 5, [("Ljava/lang/Exception;", 6)])])
    cls.method("run", params=("I",), insns=[0x000e])
    cls.method("size", ret="I", access=ACC_PUBLIC | ACC_ABSTRACT, virtual=True)
    builder.add_class("La/First;", superclass=None)
    return builder.build()


def walk(dex):
    for string_id in dex.string_ids:
        string_id.value
    for class_def in dex.class_defs:
        for method in class_def.methods:
            if method.code:
                build(decode(method.code.insns), method.code.tries, method.code.handlers)


def test_header(sample):
    dex = DexFile.from_bytes(sample)
    assert dex.header.version_str == "035"
    assert dex.header.file_size == len(sample)
    assert dex.header.endian_tag == 0x12345678


def test_strings_sorted_by_utf16_units(sample):
    dex = DexFile.from_bytes(sample)
    values = [dex.string_at(i) for i in range(len(dex.string_ids))]
    assert values == sorted(values, key=utf16_key)
    # a surrogate pair sorts before U+FFFF even though its code point is higher
    assert dex.find_string("\U0001F600") < dex.find_string("\uffff")


def test_find_string(sample):
    dex = DexFile.from_bytes(sample)
    for index in range(len(dex.string_ids)):
        assert dex.find_string(dex.string_at(index)) == index
    assert dex.find_string("not there") is None


def test_find_type(sample):
    dex = DexFile.from_bytes(sample)
    index = dex.find_type("Lcom/example/Test;")
    assert dex.type_descriptor_at(index) == "Lcom/example/Test;"
    assert dex.find_type("Lcom/example/Missing;") is None
    # a string that exists but is not a type
    assert dex.find_type("run") is None


def test_find_class_ignores_class_def_order(sample):
    dex = DexFile.from_bytes(sample)
    for descriptor in ("Lz/Last;", "Lcom/example/Test;", "La/First;"):
        assert dex.find_class(descriptor).type_name == descriptor
    assert dex.find_class("Ljava/lang/Object;") is None


def test_class_def_details(sample):
    dex = DexFile.from_bytes(sample)
    cls = dex.find_class("Lcom/example/Test;")
    assert cls.superclass == "Ljava/lang/Object;"
    assert cls.source_file == "Test.java"
    assert cls.interfaces == ["Ljava/lang/Runnable;"]

    first = dex.find_class("La/First;")
    assert first.superclass_idx == NO_INDEX
    assert first.superclass is None
    assert first.class_data is None
    assert first.methods == []


def test_methods_and_overloads(sample):
    dex = DexFile.from_bytes(sample)
    cls = dex.find_class("Lcom/example/Test;")

    overloads = dex.find_method(cls, "run")
    assert [m.signature for m in overloads] == ["run()V", "run(I)V"]
    assert overloads[0].method_id.signature == "Lcom/example/Test;->run()V"

    size = dex.find_method(cls, "size")[0]
    assert size.is_virtual
    assert size.code is None
    assert size.access_flags & DexFile.AccessFlags.abstract
    assert dex.find_method(cls, "missing") == []


def test_code_item(sample):
    dex = DexFile.from_bytes(sample)
    method = dex.find_method(dex.find_class("Lcom/example/Test;"), "run")[0]
    code = method.code

    assert code.insns == TRY_CATCH
    assert code.insns_size == len(TRY_CATCH)
    assert len(code.tries) == 1
    try_item = code.tries[0]
    assert (try_item.start_addr, try_item.insn_count, try_item.end_addr) == (0, 5, 5)
    assert 4 in try_item and 5 not in try_item
    assert code.handlers[try_item.handler_off].catches == [("Ljava/lang/Exception;", 6)]


def test_catch_all_handler():
    data = simple_dex(TRY_CATCH, tries=[Try(0, 5, [(None, 6)])])
    code = DexFile.from_bytes(data).class_defs[0].methods[0].code

    handler = code.handlers[code.tries[0].handler_off]
    assert handler.size == 0
    assert handler.catches == [(None, 6)]


def test_odd_code_length_is_padded_before_tries():
    units = [0x0012, 0x000e, 0x000d, 0x000e, 0x000e]
    data = simple_dex(units, tries=[Try(0, 1, [("Ljava/lang/Throwable;", 2)])])
    code = DexFile.from_bytes(data).class_defs[0].methods[0].code
    assert code.tries[0].start_addr == 0
    assert code.handlers[code.tries[0].handler_off].catches == [("Ljava/lang/Throwable;", 2)]


def test_lookup_out_of_range(sample):
    dex = DexFile.from_bytes(sample)
    with pytest.raises(IndexOutOfRange) as ex:
        dex.string_at(len(dex.string_ids))
    assert ex.value.table == "string_ids"
    with pytest.raises(IndexOutOfRange):
        dex.field_at(0)
    with pytest.raises(IndexOutOfRange):
        dex.method_at(-1)


def patched(data, offset, fmt, value):
    data = bytearray(data)
    struct.pack_into(fmt, data, offset, value)
    return bytes(data)


def test_bad_magic(sample):
    with pytest.raises(InvalidHeader):
        DexFile.from_bytes(b"dey\n" + sample[4:])


def test_bad_version(sample):
    with pytest.raises(InvalidHeader):
        DexFile.from_bytes(sample[:4] + b"03a\x00" + sample[8:])


def test_reverse_endian(sample):
    with pytest.raises(UnsupportedEndianness) as ex:
        DexFile.from_bytes(patched(sample, 0x28, "<I", 0x78563412))
    assert ex.value.tag == 0x78563412


def test_bad_header_size(sample):
    with pytest.raises(InvalidHeader):
        DexFile.from_bytes(patched(sample, 0x24, "<I", 0x71))


def test_file_size_larger_than_buffer(sample):
    with pytest.raises(TruncatedData):
        DexFile.from_bytes(patched(sample, 0x20, "<I", len(sample) + 1))


def test_table_outside_the_file(sample):
    # string_ids_off
    with pytest.raises(BadOffset):
        DexFile.from_bytes(patched(sample, 0x3c, "<I", len(sample)))


def test_type_id_pointing_past_string_table(sample):
    type_ids_off = DexFile.from_bytes(sample).header.type_ids_off
    with pytest.raises(IndexOutOfRange):
        DexFile.from_bytes(patched(sample, type_ids_off, "<I", 0xffff))


def test_every_truncation_is_rejected(sample):
    for size in range(len(sample)):
        with pytest.raises(DexError):
            DexFile.from_bytes(sample[:size])


def test_corrupted_bytes_raise_typed_errors(sample):
    for offset in range(len(sample)):
        data = bytearray(sample)
        data[offset] ^= 0xff
        try:
            walk(DexFile.from_bytes(bytes(data)))
        except DalvikError:
            pass
