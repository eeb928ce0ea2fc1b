"""
Command line training entry point.

Usage:
    trading-ml train-gbm bars.csv --symbol AAPL [--model-dir ./models]
    trading-ml train-dqn bars.csv --symbol AAPL --episodes 50 --output dqn.json
    trading-ml train-ppo bars.csv --symbol AAPL --episodes 10 --output ppo.json

The CSV needs timestamp, open, high, low, close and volume columns.
"""

import asyncio
import argparse
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .agent_config import DQNConfig, GBModelConfig, PPOConfig
from .config import settings, setup_logging
from .market_data import Bar, prepare_bars
from .model_store import FileModelStore
from .trading_env import train_dqn_agent, train_ppo_agent
from .training_service import ModelTrainingService, SERVICE_GB_CONFIG

logger = logging.getLogger(__name__)


def load_bars(path: str, symbol: str) -> List[Bar]:
    df = pd.read_csv(path)
    return prepare_bars(df.to_dict("records"), symbol)


def _train_gbm(args: argparse.Namespace, bars: List[Bar]) -> None:
    overrides = {"seed": args.seed}
    if args.trees is not None:
        overrides["num_trees"] = args.trees
    config = GBModelConfig(**{**SERVICE_GB_CONFIG.model_dump(), **overrides})

    service = ModelTrainingService(FileModelStore(args.model_dir), classifier_config=config)
    model = asyncio.run(service.train_model(args.symbol, bars))
    print(
        f"{model.id}: train_acc={model.train_metrics.accuracy:.4f} "
        f"test_acc={model.test_metrics.accuracy:.4f} test_auc={model.test_metrics.auc:.4f}"
    )


def _train_dqn(args: argparse.Namespace, bars: List[Bar]) -> None:
    agent, metrics = train_dqn_agent(bars, num_episodes=args.episodes, config=DQNConfig(seed=args.seed))
    model = agent.get_model(args.symbol)
    _write(args.output or f"{model.id}.json", model.model_dump_json())
    if metrics:
        print(f"{model.id}: final_reward={metrics[-1].total_reward:.4f} epsilon={agent.epsilon:.4f}")


def _train_ppo(args: argparse.Namespace, bars: List[Bar]) -> None:
    agent, history = train_ppo_agent(
        bars,
        config=PPOConfig(seed=args.seed),
        episodes=args.episodes,
        steps_per_episode=args.steps,
    )
    model = agent.export_model()
    _write(args.output or f"{model.id}.json", model.model_dump_json())
    if history.episode_rewards:
        print(f"{model.id}: final_reward={history.episode_rewards[-1]:.4f}")


def _write(path: str, payload: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(payload, encoding="utf-8")
    logger.info(f"💾 Model written to {target}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trading-ml", description="Train trading models from OHLCV CSV files")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("csv", help="OHLCV CSV file")
        p.add_argument("--symbol", required=True)
        p.add_argument("--seed", type=int, default=settings.random_seed)

    gbm = sub.add_parser("train-gbm", help="Train and store a gradient boosting classifier")
    common(gbm)
    gbm.add_argument("--model-dir", default=settings.model_dir)
    gbm.add_argument("--trees", type=int, default=None)
    gbm.set_defaults(handler=_train_gbm)

    dqn = sub.add_parser("train-dqn", help="Train a DQN agent offline")
    common(dqn)
    dqn.add_argument("--episodes", type=int, default=100)
    dqn.add_argument("--output", default=None)
    dqn.set_defaults(handler=_train_dqn)

    ppo = sub.add_parser("train-ppo", help="Train a PPO agent offline")
    common(ppo)
    ppo.add_argument("--episodes", type=int, default=10)
    ppo.add_argument("--steps", type=int, default=500)
    ppo.add_argument("--output", default=None)
    ppo.set_defaults(handler=_train_ppo)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    bars = load_bars(args.csv, args.symbol)
    logger.info(f"Loaded {len(bars)} bars for {args.symbol} from {args.csv}")

    try:
        args.handler(args, bars)
    except ValueError as e:
        logger.error(f"❌ {args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
