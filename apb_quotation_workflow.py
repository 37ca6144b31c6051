from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from apb_common import DEFAULT_RANDOM_STATE, DEFAULT_TRAIN_SIZE, save_json
from apb_standalone.dataset_workflow import DATABASE_URL_ENV, prepare_datasets
from apb_standalone.model_workflow import summarize_training_data, train_baseline


def _add_split_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db-url",
        default=None,
        help=f"SQLAlchemy database URL for the source tables (default: ${DATABASE_URL_ENV}). "
        "Only used when the split has to be recomputed.",
    )
    parser.add_argument(
        "--split-dir",
        default="data/splits",
        help="Directory holding apb-labeled-quotations.csv, apb-training.csv and apb-testing.csv.",
    )
    parser.add_argument("--train-size", type=float, default=DEFAULT_TRAIN_SIZE)
    parser.add_argument(
        "--random-state",
        type=int,
        default=DEFAULT_RANDOM_STATE,
        help="Seed of the stratified split (and of the model).",
    )
    parser.add_argument(
        "--force-rebuild",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Recompute the split from the database even if cached files exist.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Quotation-vs-noise classifier for scripture matches: dataset split, summaries, baseline model."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_prepare = sub.add_parser("prepare", help="Load the cached split or rebuild it from the database.")
    _add_split_args(p_prepare)
    p_prepare.add_argument("--output-dir", default="output/prepare")

    p_summarize = sub.add_parser(
        "summarize",
        help="Per-class feature means and a tokens-vs-tfidf scatter plot of the training partition.",
    )
    _add_split_args(p_summarize)
    p_summarize.add_argument("--output-dir", default="output/summary")

    p_train = sub.add_parser("train", help="Fit the logistic-regression baseline and score it on training data.")
    _add_split_args(p_train)
    p_train.add_argument("--output-dir", default="output/models")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    split_kwargs = {
        "db_url": args.db_url,
        "train_size": args.train_size,
        "random_state": args.random_state,
        "force_rebuild": bool(args.force_rebuild),
    }

    try:
        if args.command == "prepare":
            partitions, payload = prepare_datasets(Path(args.split_dir), **split_kwargs)
            payload["cleaned_rows"] = {name: int(len(df)) for name, df in partitions.items()}
            save_json(Path(args.output_dir) / "prepare_report.json", payload)
            print(json.dumps(payload, indent=2, ensure_ascii=False))
            return 0

        if args.command == "summarize":
            payload = summarize_training_data(Path(args.split_dir), Path(args.output_dir), **split_kwargs)
            print(json.dumps(payload, indent=2, ensure_ascii=False))
            return 0

        if args.command == "train":
            report = train_baseline(Path(args.split_dir), Path(args.output_dir), **split_kwargs)
            print(json.dumps(report, indent=2, ensure_ascii=False))
            return 0

        raise ValueError(f"Unknown command: {args.command}")
    except Exception as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
