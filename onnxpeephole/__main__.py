# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

from __future__ import annotations

import argparse
import logging
import pathlib
from typing import Protocol, Sequence

import onnx_ir as ir

from onnxpeephole import _peephole


class OptimizeCommandArgs(Protocol):
    model: pathlib.Path
    output: pathlib.Path | None
    process_functions: bool
    check_invariants: bool
    verbose: int


def _default_output(model_path: pathlib.Path) -> pathlib.Path:
    return model_path.with_name(f"{model_path.stem}.peephole{model_path.suffix}")


def optimize_command(args: OptimizeCommandArgs) -> None:
    model = ir.load(args.model)
    _peephole.peephole_optimize(
        model,
        process_functions=args.process_functions,
        check_invariants=args.check_invariants,
    )
    output = args.output if args.output is not None else _default_output(args.model)
    ir.save(model, output)
    print(f"Saved optimized model to {output}")


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="onnxpeephole",
        description="Apply ONNX peephole optimizations to a traced model",
    )
    parser.add_argument("model", metavar="ONNX_MODEL_FILE", type=pathlib.Path)
    parser.add_argument(
        "--output",
        "-o",
        metavar="OUTPUT_FILE",
        type=pathlib.Path,
        default=None,
        help="file path for the optimized model (default: <model>.peephole.onnx)",
    )
    parser.add_argument(
        "--no-functions",
        dest="process_functions",
        action="store_false",
        help="do not rewrite model-local functions",
    )
    parser.add_argument(
        "--check-invariants",
        action="store_true",
        help="verify use-lists and topological order after every pass",
    )
    parser.add_argument(
        "--verbose", "-v", action="count", default=0, help="increase logging verbosity"
    )

    args = parser.parse_args(argv)
    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level)
    optimize_command(args)


if __name__ == "__main__":
    main()
