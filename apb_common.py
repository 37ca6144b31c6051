from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
from pandas.api.types import CategoricalDtype
from sklearn.metrics import (
    accuracy_score,
    average_precision_score,
    confusion_matrix,
    f1_score,
    precision_score,
    recall_score,
    roc_auc_score,
)
from sklearn.model_selection import train_test_split

DOC_ID_COL = "doc_id"
VERSE_ID_COL = "verse_id"
MATCH_COL = "match"
TOKENS_COL = "tokens"
TFIDF_COL = "tfidf"
PROPORTION_COL = "proportion"
RUNS_PVAL_COL = "runs_pval"
GROUP_COL = "lds"
VERSION_COL = "version"

LABELED_TABLE = "apb_labeled"
QUOTATIONS_TABLE = "apb_potential_quotations"
SCRIPTURES_TABLE = "scriptures"

POSITIVE_LABEL = "quotation"
NEGATIVE_LABEL = "noise"
MATCH_LEVELS = [POSITIVE_LABEL, NEGATIVE_LABEL]

LDS_GROUP = "lds"
NOT_LDS_GROUP = "not-lds"
GROUP_LEVELS = [LDS_GROUP, NOT_LDS_GROUP]

LDS_VERSIONS = frozenset({"Book of Mormon", "Doctrine and Covenants", "Pearl of Great Price"})

ID_COLS = [VERSE_ID_COL, DOC_ID_COL]
NUMERIC_FEATURES = [TOKENS_COL, TFIDF_COL, PROPORTION_COL, RUNS_PVAL_COL]
CATEGORICAL_FEATURES = [GROUP_COL]
LABELED_COLUMNS = ID_COLS + [MATCH_COL] + NUMERIC_FEATURES + [GROUP_COL]

MATCH_DTYPE = CategoricalDtype(categories=MATCH_LEVELS, ordered=False)
GROUP_DTYPE = CategoricalDtype(categories=GROUP_LEVELS, ordered=False)

# Parsed by read_csv directly; categorical columns are checked before casting.
CSV_DTYPES: dict[str, Any] = {
    VERSE_ID_COL: str,
    DOC_ID_COL: str,
    MATCH_COL: str,
    TOKENS_COL: "int64",
    TFIDF_COL: "float64",
    PROPORTION_COL: "float64",
    RUNS_PVAL_COL: "float64",
    GROUP_COL: str,
}
CATEGORY_DTYPES = {MATCH_COL: MATCH_DTYPE, GROUP_COL: GROUP_DTYPE}

FULL_CSV_NAME = "apb-labeled-quotations.csv"
TRAINING_CSV_NAME = "apb-training.csv"
TESTING_CSV_NAME = "apb-testing.csv"
SPLIT_SUMMARY_NAME = "apb-split-summary.json"

DEFAULT_TRAIN_SIZE = 0.85
DEFAULT_RANDOM_STATE = 42
MISSING_RUNS_PVAL = 1.0


def save_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def split_cache_paths(split_dir: Path) -> dict[str, Path]:
    split_dir = Path(split_dir)
    return {
        "full": split_dir / FULL_CSV_NAME,
        "training": split_dir / TRAINING_CSV_NAME,
        "testing": split_dir / TESTING_CSV_NAME,
    }


def split_cache_exists(split_dir: Path) -> bool:
    return all(path.exists() for path in split_cache_paths(split_dir).values())


def coerce_labeled_schema(df: pd.DataFrame) -> pd.DataFrame:
    """Cast a labeled-quotation frame to the fixed column order and dtypes."""
    missing = [c for c in LABELED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing labeled-quotation columns: {missing}")
    out = df[LABELED_COLUMNS].copy()
    out[VERSE_ID_COL] = out[VERSE_ID_COL].astype(str)
    out[DOC_ID_COL] = out[DOC_ID_COL].astype(str)
    out[TOKENS_COL] = out[TOKENS_COL].astype("int64")
    for col in (TFIDF_COL, PROPORTION_COL, RUNS_PVAL_COL):
        out[col] = out[col].astype("float64")
    for col, dtype in CATEGORY_DTYPES.items():
        out[col] = out[col].astype(dtype)
    return out.reset_index(drop=True)


def read_labeled_csv(path: Path) -> pd.DataFrame:
    """Reload a persisted partition, failing on any deviation from the fixed schema."""
    path = Path(path)
    df = pd.read_csv(path, dtype=CSV_DTYPES, float_precision="round_trip")
    if list(df.columns) != LABELED_COLUMNS:
        raise ValueError(
            f"Schema mismatch in {path}: expected columns {LABELED_COLUMNS}, got {list(df.columns)}."
        )
    for col, dtype in CATEGORY_DTYPES.items():
        values = df[col]
        unknown = sorted(set(values[values.notna()]) - set(dtype.categories))
        if values.isna().any() or unknown:
            raise ValueError(
                f"Schema mismatch in {path}: column {col!r} must only hold {list(dtype.categories)}; "
                f"found unknown={unknown}, missing={int(values.isna().sum())}."
            )
    return coerce_labeled_schema(df)


def write_labeled_csv(df: pd.DataFrame, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df[LABELED_COLUMNS].to_csv(path, index=False)


def class_distribution(frame: pd.DataFrame, *, target_col: str = MATCH_COL) -> dict[str, Any]:
    counts = frame[target_col].value_counts().reindex(MATCH_LEVELS, fill_value=0)
    return {
        "rows": int(len(frame)),
        "positive_rate": float(counts[POSITIVE_LABEL] / len(frame)) if len(frame) > 0 else float("nan"),
        "class_counts": {str(k): int(v) for k, v in counts.to_dict().items()},
    }


def stratified_train_test_split(
    df: pd.DataFrame,
    *,
    target_col: str = MATCH_COL,
    train_size: float = DEFAULT_TRAIN_SIZE,
    random_state: int = DEFAULT_RANDOM_STATE,
) -> tuple[pd.DataFrame, pd.DataFrame, dict[str, Any]]:
    """
    Stratified random split on the label.

    The training partition holds floor(train_size * n) rows and the testing
    partition takes the remainder.
    """
    if target_col not in df.columns:
        raise ValueError(f"Missing target column: {target_col}")
    if not 0.0 < float(train_size) < 1.0:
        raise ValueError("train_size must be in (0, 1).")

    train_df, test_df = train_test_split(
        df,
        train_size=float(train_size),
        stratify=df[target_col].astype(str),
        random_state=int(random_state),
        shuffle=True,
    )

    summary = {
        "mode": "stratified_random_split",
        "train_size": float(train_size),
        "rounding": "n_train = floor(train_size * n), n_test = n - n_train",
        "random_state": int(random_state),
        "full": class_distribution(df, target_col=target_col),
        "training": class_distribution(train_df, target_col=target_col),
        "testing": class_distribution(test_df, target_col=target_col),
    }
    return train_df.reset_index(drop=True), test_df.reset_index(drop=True), summary


def clean_partition(df: pd.DataFrame) -> pd.DataFrame:
    """Fill missing runs-test p-values and drop identifier columns."""
    out = df.copy()
    out[RUNS_PVAL_COL] = out[RUNS_PVAL_COL].fillna(MISSING_RUNS_PVAL)
    out = out.drop(columns=ID_COLS, errors="ignore")
    return out.reset_index(drop=True)


def to_binary_target(labels: pd.Series) -> pd.Series:
    return (labels.astype(str) == POSITIVE_LABEL).astype(int)


def compute_confusion_summary(y_true: pd.Series | np.ndarray, y_pred: np.ndarray) -> dict[str, Any]:
    y = np.asarray(y_true).astype(int).reshape(-1)
    p = np.asarray(y_pred).astype(int).reshape(-1)
    # Rows are truth, columns are predictions, both ordered quotation then noise.
    matrix = confusion_matrix(y, p, labels=[1, 0])
    tp, fn = int(matrix[0, 0]), int(matrix[0, 1])
    fp, tn = int(matrix[1, 0]), int(matrix[1, 1])
    return {
        "labels": list(MATCH_LEVELS),
        "matrix": matrix.tolist(),
        "tp": tp,
        "fp": fp,
        "tn": tn,
        "fn": fn,
        "sensitivity": tp / (tp + fn) if (tp + fn) > 0 else 0.0,
        "specificity": tn / (tn + fp) if (tn + fp) > 0 else 0.0,
        "ppv": tp / (tp + fp) if (tp + fp) > 0 else 0.0,
        "npv": tn / (tn + fn) if (tn + fn) > 0 else 0.0,
    }


def compute_metrics(y_true: pd.Series, y_pred: np.ndarray, y_prob: np.ndarray) -> dict[str, float]:
    metrics: dict[str, float] = {
        "accuracy": float(accuracy_score(y_true, y_pred)),
        "precision": float(precision_score(y_true, y_pred, zero_division=0)),
        "recall": float(recall_score(y_true, y_pred, zero_division=0)),
        "f1": float(f1_score(y_true, y_pred, zero_division=0)),
        "pr_auc": float(average_precision_score(y_true, y_prob)),
    }
    try:
        metrics["roc_auc"] = float(roc_auc_score(y_true, y_prob))
    except ValueError:
        # Only one class present.
        metrics["roc_auc"] = float("nan")
    return metrics
