#!/usr/bin/env python3
"""
LayerForge — Training Script
==============================
Loads a network definition, builds the graph and runs the training loop
on synthetic data (image decoding is outside LayerForge).

Usage:
    python scripts/train.py --config configs/default.yaml --network configs/tiny-detector.yaml
    python scripts/train.py --smoke-test
    python scripts/train.py --smoke-test --resume outputs_smoke/backup/smoke_2.safetensors
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from layerforge.config import LayerForgeConfig
from layerforge.data.source import SyntheticDataSource
from layerforge.errors import LayerForgeError
from layerforge.network.definition import NetworkDefinition
from layerforge.network.graph import NetworkGraph
from layerforge.params.store import latest_checkpoint
from layerforge.training.loop import TrainingLoop

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="LayerForge Training",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Full run:
    python scripts/train.py --config configs/default.yaml --network configs/tiny-detector.yaml

    # Quick smoke test (CPU, a few iterations):
    python scripts/train.py --smoke-test

    # Resume from the newest checkpoint in the output directory:
    python scripts/train.py --smoke-test --resume latest
        """,
    )
    parser.add_argument("--config", type=str, default="configs/default.yaml")
    parser.add_argument("--network", type=str, default="configs/tiny-detector.yaml")
    parser.add_argument("--smoke-test", action="store_true")
    parser.add_argument("--output-dir", type=str, default="outputs_smoke")
    parser.add_argument(
        "--resume", type=str, default=None,
        help="Checkpoint to resume from, or 'latest'",
    )
    parser.add_argument("--classes", type=int, default=2)
    args = parser.parse_args(argv)

    if args.smoke_test:
        config = LayerForgeConfig.for_smoke_test(args.output_dir)
    else:
        config = LayerForgeConfig.from_yaml(args.config)
    logger.info(f"\n{config}")

    checkpoint = args.resume
    if checkpoint == "latest":
        checkpoint = latest_checkpoint(config.checkpoint.output_dir, config.checkpoint.name)
        if checkpoint is None:
            logger.info("No checkpoint found, starting fresh")

    try:
        graph = NetworkGraph(config.training)
        graph.load(NetworkDefinition.from_yaml(args.network))
        graph.summary()

        loop = TrainingLoop(
            config,
            graph,
            SyntheticDataSource(classes=args.classes, seed=config.training.seed),
            checkpoint=checkpoint,
        )
        result = loop.run()
    except LayerForgeError as e:
        logger.error(str(e))
        return 1

    summary = {
        "start_iteration": result.start_iteration,
        "final_iteration": result.final_iteration,
        "final_loss": result.final_loss,
        "avg_loss": result.avg_loss,
        "checkpoints": [str(p) for p in result.checkpoints],
        "log_path": str(result.log_path),
        "elapsed_seconds": result.elapsed_seconds,
    }
    results_path = Path(config.checkpoint.output_dir) / "train_results.json"
    results_path.parent.mkdir(parents=True, exist_ok=True)
    with open(results_path, "w") as f:
        json.dump(summary, f, indent=2)
    logger.info(f"Results written to {results_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
