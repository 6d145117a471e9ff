import logging
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Set

from errors import InvalidTarget
from helpers import descriptor_to_java
from instructions import Flow, Instruction
from utils import LogHandler

handler = LogHandler()
log = logging.getLogger(__name__)
log.addHandler(handler)
log.setLevel(logging.WARNING)


class EdgeKind(Enum):
    FALLTHROUGH = "fallthrough"
    UNCONDITIONAL = "unconditional"
    BRANCH_TRUE = "branch-true"
    BRANCH_FALSE = "branch-false"
    SWITCH_CASE = "switch-case"
    SWITCH_DEFAULT = "switch-default"
    EXCEPTION = "exception"


class Edge(NamedTuple):
    source: int
    target: int
    kind: EdgeKind
    # case value for switch-case, exception descriptor (None for catch-all) for exception
    value: Optional[object] = None

    @property
    def label(self) -> str:
        if self.kind is EdgeKind.SWITCH_CASE:
            return "switch-case(%d)" % self.value
        if self.kind is EdgeKind.EXCEPTION:
            return "exception(%s)" % (descriptor_to_java(self.value) if self.value else "any")
        return self.kind.value


class BasicBlock:
    def __init__(self, start: int):
        self.start = start
        self.instructions: List[Instruction] = []
        # only holds nops aligning a payload, never reached
        self.is_padding = False

    @property
    def end(self) -> int:
        """Exclusive end address."""
        return self.last.next_address if self.instructions else self.start

    @property
    def last(self) -> Instruction:
        return self.instructions[-1]

    def __contains__(self, address: int) -> bool:
        return self.start <= address < self.end

    def __repr__(self):
        return "<BasicBlock %04x-%04x>" % (self.start, self.end)


class ControlFlowGraph:
    def __init__(self, blocks: Dict[int, BasicBlock], edges: List[Edge]):
        self.blocks = blocks
        self.edges = edges

    @property
    def entry(self) -> Optional[BasicBlock]:
        return self.blocks.get(0)

    @property
    def terminal_blocks(self) -> List[BasicBlock]:
        sources = {edge.source for edge in self.edges}
        return [block for start, block in self.blocks.items() if start not in sources and not block.is_padding]

    def edges_from(self, start: int) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == start]

    def block_at(self, address: int) -> Optional[BasicBlock]:
        for block in self.blocks.values():
            if address in block:
                return block
        return None


def padding_nops(instructions: List[Instruction]) -> Set[int]:
    """Addresses of the nops in front of a payload that no instruction falls through to."""
    padding = set()
    run = []
    reachable = True
    for instruction in instructions:
        if instruction.is_payload:
            if not reachable:
                padding.update(run)
            run = []
            reachable = False
        elif instruction.opcode == 0x00:
            run.append(instruction.address)
        else:
            run = []
            reachable = instruction.flow in (Flow.NEXT, Flow.BRANCH, Flow.SWITCH)
    return padding


def find_leaders(instructions: List[Instruction], tries, handlers) -> Set[int]:
    """
    First pass: collect every address that starts a basic block and make sure each one
    lands on an executable instruction.
    """
    executable = {instruction.address for instruction in instructions if not instruction.is_payload}
    boundaries = {instruction.address for instruction in instructions}
    if instructions:
        boundaries.add(instructions[-1].next_address)
    padding = padding_nops(instructions)

    def target(address: int, reason: str) -> int:
        if address not in executable:
            raise InvalidTarget(address, reason)
        return address

    leaders = set()
    if instructions:
        leaders.add(target(0, "entry"))

    previous = None
    for instruction in instructions:
        # straight-line code resumes after anything that leaves it, payloads included
        if previous is not None and not instruction.is_payload:
            if previous.is_payload or previous.flow is not Flow.NEXT:
                leaders.add(instruction.address)
        previous = instruction

        if instruction.is_payload:
            continue

        match instruction.flow:
            case Flow.GOTO:
                leaders.add(target(instruction.target, "branch target"))
            case Flow.BRANCH:
                leaders.add(target(instruction.target, "branch target"))
                leaders.add(target(instruction.next_address, "branch fallthrough"))
            case Flow.SWITCH:
                for _, case_target in instruction.cases:
                    leaders.add(target(case_target, "switch case target"))
                leaders.add(target(instruction.next_address, "switch default"))
            case Flow.NEXT if instruction.address not in padding:
                # running off the end or into a payload
                target(instruction.next_address, "fallthrough")

    for try_item in tries:
        if try_item.insn_count:
            leaders.add(target(try_item.start_addr, "try start"))
            end = try_item.start_addr + try_item.insn_count
            if end not in boundaries:
                raise InvalidTarget(end, "try end")
        for _, address in catches_of(try_item, handlers):
            leaders.add(target(address, "exception handler"))

    return leaders


def catches_of(try_item, handlers):
    catch_handler = handlers.get(try_item.handler_off)
    if catch_handler is None:
        raise InvalidTarget(try_item.handler_off, "catch handler offset")
    return catch_handler.catches


def build(instructions: List[Instruction], tries=(), handlers=None) -> ControlFlowGraph:
    """
    Split decoded instructions into basic blocks and connect them.

    `tries` are try items (start_addr, insn_count, handler_off) in file order, `handlers` maps
    a handler offset to its catch handler whose `catches` lists (descriptor, address) pairs,
    catch-all last with a None descriptor.
    """
    handlers = handlers or {}
    tries = list(tries)
    leaders = find_leaders(instructions, tries, handlers)

    padding = padding_nops(instructions)

    blocks: Dict[int, BasicBlock] = {}
    block = None
    for instruction in instructions:
        if instruction.is_payload:
            block = None
            continue
        if block is None or instruction.address in leaders:
            block = BasicBlock(instruction.address)
            blocks[block.start] = block
        block.instructions.append(instruction)

    for block in blocks.values():
        block.is_padding = all(instruction.address in padding for instruction in block.instructions)

    edges: List[Edge] = []
    for start, block in blocks.items():
        last = block.last
        match last.flow:
            case Flow.RETURN | Flow.THROW:
                pass
            case Flow.GOTO:
                edges.append(Edge(start, last.target, EdgeKind.UNCONDITIONAL))
            case Flow.BRANCH:
                edges.append(Edge(start, last.target, EdgeKind.BRANCH_TRUE))
                edges.append(Edge(start, last.next_address, EdgeKind.BRANCH_FALSE))
            case Flow.SWITCH:
                for value, case_target in last.cases:
                    edges.append(Edge(start, case_target, EdgeKind.SWITCH_CASE, value))
                edges.append(Edge(start, last.next_address, EdgeKind.SWITCH_DEFAULT))
            case _:
                if last.next_address in blocks:
                    edges.append(Edge(start, last.next_address, EdgeKind.FALLTHROUGH))

        for try_item in tries:
            try_end = try_item.start_addr + try_item.insn_count
            if not any(try_item.start_addr <= instruction.address < try_end for instruction in block.instructions):
                continue
            for descriptor, address in catches_of(try_item, handlers):
                edges.append(Edge(start, address, EdgeKind.EXCEPTION, descriptor))

    log.debug("built %d blocks and %d edges from %d instructions", len(blocks), len(edges), len(instructions))
    return ControlFlowGraph(dict(sorted(blocks.items())), edges)
