import logging

import graphviz

from cfg import ControlFlowGraph, EdgeKind
from errors import IOFailure
from utils import LogHandler

handler = LogHandler()
log = logging.getLogger(__name__)
log.addHandler(handler)
log.setLevel(logging.WARNING)

EDGE_STYLES = {
    EdgeKind.BRANCH_TRUE: {"color": "green"},
    EdgeKind.BRANCH_FALSE: {"color": "red"},
    EdgeKind.UNCONDITIONAL: {"penwidth": "2"},
    EdgeKind.EXCEPTION: {"style": "dashed"},
}


def node_id(start: int) -> str:
    return "block_%04x" % start


def to_digraph(cfg: ControlFlowGraph, lookup=None, name: str = "cfg") -> graphviz.Digraph:
    dot = graphviz.Digraph(name=name,
                           graph_attr={"nojustify": "true"},
                           node_attr={"shape": "box", "fontname": "monospace"})

    for start, block in cfg.blocks.items():
        # \l left justifies every line
        label = "".join("%04x: %s\\l" % (instruction.address, instruction.render(lookup))
                        for instruction in block.instructions)
        if block.is_padding:
            dot.node(node_id(start), label=graphviz.nohtml(label), style="dotted")
        else:
            dot.node(node_id(start), label=graphviz.nohtml(label))

    for edge in cfg.edges:
        dot.edge(node_id(edge.source), node_id(edge.target), label=edge.label, **EDGE_STYLES.get(edge.kind, {}))

    return dot


def render(cfg: ControlFlowGraph, lookup=None, name: str = "cfg") -> str:
    """DOT source of the graph, identical for identical input."""
    return to_digraph(cfg, lookup, name).source


def emit(cfg: ControlFlowGraph, writer, lookup=None, name: str = "cfg") -> None:
    source = render(cfg, lookup, name)
    try:
        writer.write(source)
    except OSError as ex:
        raise IOFailure("could not write graph: %s" % ex) from ex
    log.debug("wrote %d blocks, %d edges", len(cfg.blocks), len(cfg.edges))
