import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import torch

from compound_core import (
    EvolutionConfig,
    OptimizerMode,
    run_evolution_demo_sync,
    run_signal_demo,
)


logger = logging.getLogger("compound_core.main")


def _add_log_level_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level for this launcher.",
    )


def _signal_pair(text: str) -> Tuple[str, float]:
    key, sep, raw = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {text!r}")
    try:
        return key, float(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Value for {key!r} is not a number: {raw!r}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="main.py",
        description="Compound evolution entrypoint: entity analysis and signal processing.",
    )
    _add_log_level_arg(parser)

    sub = parser.add_subparsers(dest="mode")

    analyze = sub.add_parser("analyze", help="Run the compound analysis pipeline on an entity.")
    _add_log_level_arg(analyze)
    analyze.add_argument(
        "--entity",
        default=None,
        help="Path to a JSON entity snapshot. Uses the built-in TITAN_SERUM entity when omitted.",
    )
    analyze.add_argument(
        "--runs",
        type=int,
        default=2,
        help="Number of consecutive analyses on the same orchestrator.",
    )
    analyze.add_argument(
        "--mode",
        dest="optimizer_mode",
        default=OptimizerMode.PER_CALL.value,
        choices=[mode.value for mode in OptimizerMode],
        help="Fresh optimizer per analysis, or one shared optimizer with persistent momentum.",
    )
    analyze.add_argument(
        "--history-capacity",
        type=int,
        default=1024,
        help="Maximum number of mutation history entries kept.",
    )
    analyze.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for predictor weight initialization.",
    )

    signal = sub.add_parser("signal", help="Feed a feature signal through the signal processor.")
    _add_log_level_arg(signal)
    signal.add_argument(
        "features",
        nargs="+",
        type=_signal_pair,
        help="Feature values as KEY=VALUE.",
    )
    signal.add_argument(
        "--intensity",
        type=float,
        default=None,
        help="Context intensity; omit to process without context.",
    )
    signal.add_argument(
        "--repeat",
        type=int,
        default=1,
        help="How many times to feed the same signal.",
    )
    signal.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for initial synaptic weights.",
    )

    return parser


def _load_entity(path: Optional[str]) -> Optional[Dict[str, Any]]:
    if path is None:
        return None
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _run(parsed: argparse.Namespace) -> Dict[str, Any]:
    mode = parsed.mode or "analyze"

    if mode == "analyze":
        seed = getattr(parsed, "seed", None)
        if seed is not None:
            torch.manual_seed(seed)
        config = EvolutionConfig(
            optimizer_mode=OptimizerMode(getattr(parsed, "optimizer_mode", OptimizerMode.PER_CALL.value)),
            history_capacity=int(getattr(parsed, "history_capacity", 1024)),
        )
        return run_evolution_demo_sync(
            int(getattr(parsed, "runs", 2)),
            entity=_load_entity(getattr(parsed, "entity", None)),
            config=config,
        )
    if mode == "signal":
        return run_signal_demo(
            dict(parsed.features),
            intensity=parsed.intensity,
            repeat=int(parsed.repeat),
            seed=parsed.seed,
        )

    raise ValueError(f"Unknown mode: {mode}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    parsed = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(parsed.log_level)),
        format="%(asctime)s - %(levelname)s - %(message)s",
        force=True,
    )

    try:
        result = _run(parsed)
    except Exception as exc:
        logger.exception("Compound evolution run failed: %s", exc)
        return 1

    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
