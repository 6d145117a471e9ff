#!/usr/bin/env python
import logging
from typing import Optional

import graph
from cfg import ControlFlowGraph, build
from dex import DexFile
from errors import AmbiguousMethod, ClassNotFound, MethodNotFound, NoCode
from helpers import normalize_class_name
from instructions import decode
from utils import LogHandler

handler = LogHandler()
log = logging.getLogger(__name__)
log.addHandler(handler)
log.setLevel(logging.INFO)


class Disassembler:
    def __init__(self, data: bytes):
        self.dex = DexFile.from_bytes(data)
        log.debug("loaded dex %s with %d classes", self.dex.header.version_str, len(self.dex.class_defs))

    @classmethod
    def from_file(cls, dex_file_path) -> "Disassembler":
        with open(dex_file_path, "rb") as fd:
            return cls(fd.read())

    def method(self, class_name: str, method_name: str, signature: Optional[str] = None) -> DexFile.EncodedMethod:
        """
        Find exactly one method. `class_name` may be dotted, slashed or a type descriptor,
        `signature` is either name(params)ret or just (params)ret and is required when
        the name is overloaded.
        """
        descriptor = normalize_class_name(class_name)
        class_def = self.dex.find_class(descriptor)
        if class_def is None:
            raise ClassNotFound(descriptor)

        candidates = self.dex.find_method(class_def, method_name)
        if signature:
            candidates = [method for method in candidates
                          if signature in (method.signature, method.method_id.proto_id.descriptor)]

        if not candidates:
            wanted = method_name + (" " + signature if signature else "")
            raise MethodNotFound("method %s not found in %s" % (wanted, descriptor))
        if len(candidates) > 1:
            raise AmbiguousMethod(method_name, [method.signature for method in candidates])

        method = candidates[0]
        if method.code is None:
            access = None
            if method.access_flags & DexFile.AccessFlags.abstract:
                access = "abstract"
            elif method.access_flags & DexFile.AccessFlags.native:
                access = "native"
            raise NoCode("%s->%s" % (descriptor, method.signature), access)

        log.debug("found %s->%s", descriptor, method.signature)
        return method

    def control_flow_graph(self, method: DexFile.EncodedMethod) -> ControlFlowGraph:
        code = method.code
        if code is None:
            raise NoCode("%s->%s" % (method.class_name, method.signature))
        instructions = decode(code.insns)
        return build(instructions, code.tries, code.handlers)

    def render(self, class_name: str, method_name: str, signature: Optional[str] = None) -> str:
        method = self.method(class_name, method_name, signature)
        return graph.render(self.control_flow_graph(method), lookup=self.dex)

    def emit(self, writer, class_name: str, method_name: str, signature: Optional[str] = None) -> None:
        method = self.method(class_name, method_name, signature)
        graph.emit(self.control_flow_graph(method), writer, lookup=self.dex)
