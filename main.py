#!/usr/bin/env python
import argparse
import logging
import sys

from disassembler import Disassembler
from errors import AmbiguousMethod, DalvikError
from utils import LogHandler, configure_logging

handler = LogHandler()
log = logging.getLogger("main")
log.setLevel(logging.INFO)
log.addHandler(handler)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dexflow",
                                     description="Print the control flow graph of a dex method as graphviz DOT")
    parser.add_argument("DEX_FILE", help="Input dex file")
    parser.add_argument("CLASS", help="Class name, e.g. com.example.MyClass or Lcom/example/MyClass;")
    parser.add_argument("METHOD", help="Method name")
    parser.add_argument(
        "-s", "--signature", help="Pick one overload, either as name(params)ret or (params)ret. Example: \
        dexflow classes.dex com.example.MyClass run -s '(I)V'"
    )
    parser.add_argument(
        "-v", "--verbose", help="Enable verbose logging", action="store_true"
    )
    parser.add_argument(
        "-j", "--json", help="Output log records as JSON objects", action="store_true"
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, args.json)

    try:
        disassembler = Disassembler.from_file(args.DEX_FILE)
        disassembler.emit(sys.stdout, args.CLASS, args.METHOD, args.signature)
    except OSError as ex:
        log.error("could not read %s: %s", args.DEX_FILE, ex, extra={"stage": "read"})
        return 1
    except AmbiguousMethod as ex:
        log.error("%s error: %s", ex.stage, ex, extra={"stage": ex.stage})
        for signature in ex.signatures:
            log.info("candidate: %s", signature)
        return 1
    except DalvikError as ex:
        log.error("%s error: %s", ex.stage, ex, extra={"stage": ex.stage})
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
