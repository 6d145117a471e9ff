from collections import namedtuple

import pytest

from cfg import EdgeKind, build
from errors import InvalidTarget
from instructions import decode

TryItem = namedtuple("TryItem", "start_addr insn_count handler_off")
CatchHandler = namedtuple("CatchHandler", "catches")

BRANCH = [0x0038, 0x0004, 0x1112, 0x010f, 0x0112, 0x010f]
SWITCH = [0x002b, 0x0008, 0x0000, 0x000e, 0x1012, 0x000e, 0x000e, 0x000e,
          0x0100, 0x0003, 0x0000, 0x0000, 0x0004, 0x0000, 0x0006, 0x0000, 0x0007, 0x0000]
TRY_CATCH = [0x0012, 0x0071, 0x0000, 0x0000, 0x1112, 0x000e, 0x000d, 0x000e]


def cfg_of(units, tries=(), handlers=None):
    return build(decode(units), tries, handlers)


def test_single_return():
    cfg = cfg_of([0x000e])
    assert list(cfg.blocks) == [0]
    assert cfg.edges == []
    assert cfg.entry is cfg.blocks[0]
    assert cfg.terminal_blocks == [cfg.blocks[0]]


def test_if_produces_true_then_false_edge():
    cfg = cfg_of(BRANCH)

    assert list(cfg.blocks) == [0, 2, 4]
    assert [(e.target, e.kind) for e in cfg.edges_from(0)] == [(4, EdgeKind.BRANCH_TRUE), (2, EdgeKind.BRANCH_FALSE)]
    assert cfg.edges_from(2) == []
    assert cfg.edges_from(4) == []


def test_packed_switch_edges():
    cfg = cfg_of(SWITCH)

    assert list(cfg.blocks) == [0, 3, 4, 6, 7]
    edges = cfg.edges_from(0)
    assert [e.label for e in edges] == ["switch-case(0)", "switch-case(1)", "switch-case(2)", "switch-default"]
    assert [e.target for e in edges] == [4, 6, 7, 3]
    # the payload is not part of any block
    assert cfg.blocks[7].end == 8
    assert cfg.block_at(9) is None


def test_try_block_with_one_handler():
    tries = [TryItem(0, 5, 0)]
    handlers = {0: CatchHandler([("Ljava/lang/Exception;", 6)])}
    cfg = cfg_of(TRY_CATCH, tries, handlers)

    assert list(cfg.blocks) == [0, 6]
    exception_edges = [e for e in cfg.edges if e.kind is EdgeKind.EXCEPTION]
    assert len(exception_edges) == 1
    edge = exception_edges[0]
    assert (edge.source, edge.target, edge.value) == (0, 6, "Ljava/lang/Exception;")
    assert edge.label == "exception(java.lang.Exception)"


def test_catch_all_edge_comes_last():
    tries = [TryItem(0, 5, 0)]
    handlers = {0: CatchHandler([("Ljava/io/IOException;", 6), (None, 6)])}
    cfg = cfg_of(TRY_CATCH, tries, handlers)

    labels = [e.label for e in cfg.edges_from(0)]
    assert labels == ["exception(java.io.IOException)", "exception(any)"]


def test_exception_edges_do_not_replace_normal_edges():
    units = [0x0038, 0x0003, 0x0000, 0x000e, 0x000d, 0x000e]
    tries = [TryItem(0, 2, 0)]
    handlers = {0: CatchHandler([(None, 4)])}
    cfg = cfg_of(units, tries, handlers)

    assert [e.kind for e in cfg.edges_from(0)] == [EdgeKind.BRANCH_TRUE, EdgeKind.BRANCH_FALSE, EdgeKind.EXCEPTION]


def test_blocks_partition_executable_instructions():
    instructions = decode(SWITCH)
    cfg = build(instructions)

    in_blocks = [i.address for block in cfg.blocks.values() for i in block.instructions]
    executable = [i.address for i in instructions if not i.is_payload]
    assert sorted(in_blocks) == executable
    for block in cfg.blocks.values():
        assert block.start == block.instructions[0].address
        assert all(i.address in block for i in block.instructions)


def test_goto_and_fallthrough():
    # goto +2; return-void; const/4 v0, 0; return-void
    cfg = cfg_of([0x0228, 0x000e, 0x0012, 0x000e])

    assert list(cfg.blocks) == [0, 1, 2]
    assert [(e.target, e.kind) for e in cfg.edges_from(0)] == [(2, EdgeKind.UNCONDITIONAL)]


def test_leader_splits_straight_line_code():
    # the handler at 1 splits a block that would otherwise run on
    units = [0x0012, 0x0012, 0x000e]
    tries = [TryItem(0, 1, 0)]
    handlers = {0: CatchHandler([(None, 1)])}
    cfg = cfg_of(units, tries, handlers)

    assert list(cfg.blocks) == [0, 1]
    assert [e.kind for e in cfg.edges_from(0)] == [EdgeKind.FALLTHROUGH, EdgeKind.EXCEPTION]


def test_alignment_nop_before_payload():
    # const/4; fill-array-data; return-void; nop; payload at 6
    units = [0x0012, 0x0026, 0x0005, 0x0000, 0x000e, 0x0000, 0x0300, 0x0001, 0x0002, 0x0000, 0x0201]
    cfg = cfg_of(units)

    assert list(cfg.blocks) == [0, 5]
    assert cfg.blocks[5].is_padding
    assert not cfg.blocks[0].is_padding
    assert cfg.edges == []
    assert cfg.terminal_blocks == [cfg.blocks[0]]


def test_falling_into_a_payload():
    # fill-array-data; nop; then the payload
    units = [0x0026, 0x0004, 0x0000, 0x0000, 0x0300, 0x0001, 0x0002, 0x0000, 0x0201]
    with pytest.raises(InvalidTarget) as ex:
        cfg_of(units)
    assert ex.value.address == 4
    assert ex.value.reason == "fallthrough"


def test_falling_off_the_end():
    with pytest.raises(InvalidTarget) as ex:
        cfg_of([0x0012])
    assert ex.value.address == 1
    with pytest.raises(InvalidTarget):
        cfg_of([0x000e, 0x0000])


def test_try_spanning_several_blocks():
    # if-eqz v0, +3; const/4 v0, 0; invoke-static; return-void; move-exception v0; return-void
    units = [0x0038, 0x0003, 0x0012, 0x0071, 0x0000, 0x0000, 0x000e, 0x000d, 0x000e]
    tries = [TryItem(0, 6, 0)]
    handlers = {0: CatchHandler([("Ljava/lang/Exception;", 7)])}
    cfg = cfg_of(units, tries, handlers)

    assert list(cfg.blocks) == [0, 2, 3, 7]
    exception_edges = [(e.source, e.target) for e in cfg.edges if e.kind is EdgeKind.EXCEPTION]
    assert exception_edges == [(0, 7), (2, 7), (3, 7)]
    assert cfg.edges_from(7) == []


def test_try_running_past_the_code():
    tries = [TryItem(0, 100, 0)]
    handlers = {0: CatchHandler([(None, 1)])}
    with pytest.raises(InvalidTarget) as ex:
        cfg_of([0x0012, 0x000e], tries, handlers)
    assert ex.value.address == 100
    assert ex.value.reason == "try end"


def test_try_ending_inside_an_instruction():
    # const/16 v0, 5 spans two code units
    tries = [TryItem(0, 1, 0)]
    handlers = {0: CatchHandler([(None, 2)])}
    with pytest.raises(InvalidTarget) as ex:
        cfg_of([0x0013, 0x0005, 0x000e], tries, handlers)
    assert ex.value.address == 1


def test_try_ending_at_the_code_end():
    tries = [TryItem(0, 2, 0)]
    handlers = {0: CatchHandler([(None, 1)])}
    cfg = cfg_of([0x0012, 0x000e], tries, handlers)
    assert [e.kind for e in cfg.edges_from(0)] == [EdgeKind.FALLTHROUGH, EdgeKind.EXCEPTION]


def test_branch_into_the_middle_of_an_instruction():
    with pytest.raises(InvalidTarget) as ex:
        cfg_of([0x0228, 0x0013, 0x0005, 0x000e])
    assert ex.value.address == 2


def test_branch_fallthrough_off_the_end():
    with pytest.raises(InvalidTarget):
        cfg_of([0x0038, 0x0000])


def test_handler_outside_the_code():
    tries = [TryItem(0, 1, 0)]
    handlers = {0: CatchHandler([(None, 10)])}
    with pytest.raises(InvalidTarget):
        cfg_of([0x000e], tries, handlers)


def test_handler_pointing_at_payload():
    units = [0x0026, 0x0004, 0x0000, 0x000e, 0x0300, 0x0001, 0x0000, 0x0000]
    tries = [TryItem(0, 3, 0)]
    handlers = {0: CatchHandler([(None, 4)])}
    with pytest.raises(InvalidTarget):
        cfg_of(units, tries, handlers)
