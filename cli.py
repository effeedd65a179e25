#!/usr/bin/env python3
"""
E20 Cache Simulator / CLI
==========================
Runs an E20 program image and prints a trace of data cache activity.

Provides:
  - L1-only or L1+L2 cache configuration
  - Cache HIT / MISS / SW trace for every lw / sw
  - Optional final-state dump and cache contents dump
  - Assembly of E20 source into the program image format

Usage:
  python cli.py [--cache CACHE] [--state [N]] [--dump-cache LEVEL] filename
  python cli.py --assemble SRC OUT
"""

from __future__ import annotations
import argparse
import sys

from asm import assemble, to_machine_code, AsmError
from cache import CacheConfig, CacheConfigError, format_log_entry
from e20 import MEM_SIZE
from system import E20System, LoadError, load_machine_code_file


class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        sys.exit(1)


def _memquantity(text: str) -> int:
    n = int(text)
    if not 0 <= n <= MEM_SIZE:
        raise argparse.ArgumentTypeError(f"must be between 0 and {MEM_SIZE}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        description="Simulate E20 cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py --cache 4,1,1 program.bin\n"
               "  python cli.py --cache 8,2,2,32,4,4 program.bin\n"
               "  python cli.py --cache 4,1,1 --state 64 program.bin\n"
               "  python cli.py --assemble program.s program.bin\n"
    )
    parser.add_argument("filename", nargs="?", default=None,
                        help="The file containing machine code, typically with .bin suffix")
    parser.add_argument("--cache", type=str, default=None,
                        help="Cache configuration: size,associativity,blocksize "
                             "(for one cache) or "
                             "size,associativity,blocksize,size,associativity,blocksize "
                             "(for two caches)")
    parser.add_argument("--state", type=_memquantity, nargs="?", const=128,
                        default=None, metavar="N",
                        help="Print final state with the first N memory words "
                             "(default: 128)")
    parser.add_argument("--dump-cache", type=int, action="append", default=[],
                        metavar="LEVEL",
                        help="Print the contents of cache LEVEL (1 or 2) after halting")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC to the program image OUT and exit")
    return parser


def _assemble_file(src_path: str, out_path: str):
    try:
        with open(src_path, "r") as f:
            source = f.read()
    except OSError:
        print(f"Can't open file {src_path}", file=sys.stderr)
        sys.exit(1)
    try:
        words = assemble(source)
    except AsmError as e:
        print(f"Assembly error: {e}", file=sys.stderr)
        sys.exit(1)
    with open(out_path, "w") as f:
        f.write(to_machine_code(words))
    print(f"Assembled {src_path} → {out_path} ({len(words)} words)")


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        _assemble_file(*args.assemble)
        return

    if args.filename is None:
        parser.error("the following arguments are required: filename")

    try:
        words = load_machine_code_file(args.filename)
    except OSError:
        print(f"Can't open file {args.filename}", file=sys.stderr)
        sys.exit(1)
    except LoadError as e:
        print(e, file=sys.stderr)
        sys.exit(1)

    config = None
    if args.cache:
        try:
            config = CacheConfig.parse(args.cache)
        except CacheConfigError as e:
            print(e, file=sys.stderr)
            sys.exit(1)

    sim = E20System(config, on_event=lambda ev: print(format_log_entry(ev)))
    sim.load_program(words)
    for line in sim.cache_config_lines():
        print(line)

    sim.run()

    if args.state is not None:
        print(sim.dump_state(args.state), end="")
    for number in args.dump_cache:
        text = sim.dump_cache(number)
        if text is not None:
            print(text)


if __name__ == "__main__":
    main()
