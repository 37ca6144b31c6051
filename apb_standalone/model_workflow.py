from __future__ import annotations

from pathlib import Path
from typing import Any

import joblib
import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
from sklearn.compose import ColumnTransformer  # noqa: E402
from sklearn.linear_model import LogisticRegression  # noqa: E402
from sklearn.metrics import roc_curve  # noqa: E402
from sklearn.pipeline import Pipeline  # noqa: E402
from sklearn.preprocessing import OneHotEncoder, StandardScaler  # noqa: E402

from apb_common import (  # noqa: E402
    CATEGORICAL_FEATURES,
    DEFAULT_RANDOM_STATE,
    DEFAULT_TRAIN_SIZE,
    MATCH_COL,
    MATCH_LEVELS,
    NEGATIVE_LABEL,
    NUMERIC_FEATURES,
    POSITIVE_LABEL,
    TFIDF_COL,
    TOKENS_COL,
    compute_confusion_summary,
    compute_metrics,
    save_json,
    to_binary_target,
)
from apb_standalone.dataset_workflow import prepare_datasets  # noqa: E402

LABEL_COLORS = {POSITIVE_LABEL: "tab:blue", NEGATIVE_LABEL: "tab:orange"}


def summarize_feature_means(df: pd.DataFrame) -> pd.DataFrame:
    grouped = df.groupby(MATCH_COL, observed=False)
    summary = grouped[NUMERIC_FEATURES].mean()
    summary.insert(0, "rows", grouped.size())
    return summary.reindex(MATCH_LEVELS).reset_index()


def plot_tokens_vs_tfidf(df: pd.DataFrame, output_png: Path) -> Path:
    output_png.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(7, 5))
    for label in MATCH_LEVELS:
        part = df[df[MATCH_COL] == label]
        ax.scatter(part[TOKENS_COL], part[TFIDF_COL], s=8, alpha=0.5, color=LABEL_COLORS[label], label=label)
    ax.set_xlabel("Matching tokens")
    ax.set_ylabel("TF-IDF")
    ax.set_title("Token count vs. TF-IDF by label")
    ax.legend(title="Label")
    fig.savefig(output_png, bbox_inches="tight")
    plt.close(fig)
    return output_png


def plot_roc_curve(y_true: pd.Series, y_prob: np.ndarray, output_png: Path, *, title: str = "ROC curve") -> Path:
    output_png.parent.mkdir(parents=True, exist_ok=True)
    fpr, tpr, _ = roc_curve(y_true, y_prob)
    fig, ax = plt.subplots(figsize=(5, 5))
    ax.plot(fpr, tpr, color="tab:blue", lw=2)
    ax.plot([0, 1], [0, 1], color="grey", lw=1, linestyle="--")
    ax.set_xlim(0.0, 1.0)
    ax.set_ylim(0.0, 1.0)
    ax.set_xlabel("1 - specificity")
    ax.set_ylabel("Sensitivity")
    ax.set_title(title)
    fig.savefig(output_png, bbox_inches="tight")
    plt.close(fig)
    return output_png


def build_preprocessor() -> ColumnTransformer:
    preprocessor = ColumnTransformer(
        transformers=[
            ("num", StandardScaler(), NUMERIC_FEATURES),
            ("cat", OneHotEncoder(handle_unknown="ignore", sparse_output=False), CATEGORICAL_FEATURES),
        ],
        remainder="drop",
    )
    return preprocessor.set_output(transform="pandas")


def split_features_target(df: pd.DataFrame) -> tuple[pd.DataFrame, pd.Series]:
    return df.drop(columns=[MATCH_COL]), to_binary_target(df[MATCH_COL])


def preprocess_partitions(
    train_df: pd.DataFrame,
    test_df: pd.DataFrame,
) -> tuple[ColumnTransformer, pd.DataFrame, pd.DataFrame]:
    """Fit centering/scaling/one-hot on training only and apply it to both partitions."""
    x_train, _ = split_features_target(train_df)
    x_test, _ = split_features_target(test_df)
    preprocessor = build_preprocessor()
    x_train_t = preprocessor.fit_transform(x_train)
    x_test_t = preprocessor.transform(x_test)
    return preprocessor, x_train_t, x_test_t


def make_estimator(*, random_state: int) -> LogisticRegression:
    return LogisticRegression(max_iter=1000, random_state=random_state)


def evaluate_predictions(y_true: pd.Series, y_pred: np.ndarray, y_prob: np.ndarray) -> dict[str, Any]:
    return {
        "metrics": compute_metrics(y_true, y_pred, y_prob),
        "confusion_matrix": compute_confusion_summary(y_true, y_pred),
    }


def train_baseline(
    split_dir: Path,
    output_dir: Path,
    *,
    db_url: str | None = None,
    train_size: float = DEFAULT_TRAIN_SIZE,
    random_state: int = DEFAULT_RANDOM_STATE,
    force_rebuild: bool = False,
) -> dict[str, Any]:
    output_dir.mkdir(parents=True, exist_ok=True)
    partitions, prep_payload = prepare_datasets(
        split_dir,
        db_url=db_url,
        train_size=train_size,
        random_state=random_state,
        force_rebuild=force_rebuild,
    )
    train_df = partitions["training"]
    test_df = partitions["testing"]

    preprocessor, x_train, x_test = preprocess_partitions(train_df, test_df)
    y_train = to_binary_target(train_df[MATCH_COL])

    print(f"[train] fitting logistic regression on {len(x_train)} rows x {x_train.shape[1]} features")
    model = make_estimator(random_state=random_state)
    model.fit(x_train, y_train)

    train_prob = model.predict_proba(x_train)[:, 1]
    train_pred = model.predict(x_train)
    evaluation = evaluate_predictions(y_train, train_pred, train_prob)

    roc_png = plot_roc_curve(y_train, train_prob, output_dir / "roc_curve_training.png", title="ROC curve (training)")
    pipe = Pipeline(steps=[("prep", preprocessor), ("model", model)])
    model_path = output_dir / "baseline_logreg.joblib"
    joblib.dump(pipe, model_path)

    coefficients = {
        str(name): float(coef) for name, coef in zip(x_train.columns, model.coef_.reshape(-1))
    }
    report = {
        "prepare": prep_payload,
        "model_name": "logistic_regression",
        "positive_label": POSITIVE_LABEL,
        "training_rows": int(len(x_train)),
        "testing_rows": int(len(x_test)),
        "feature_columns": [str(c) for c in x_train.columns],
        "intercept": float(model.intercept_[0]),
        "coefficients": coefficients,
        "training_evaluation": evaluation,
        "artifacts": {
            "model_joblib": str(model_path),
            "roc_curve_png": str(roc_png),
        },
    }
    save_json(output_dir / "training_report.json", report)
    return report


def summarize_training_data(
    split_dir: Path,
    output_dir: Path,
    *,
    db_url: str | None = None,
    train_size: float = DEFAULT_TRAIN_SIZE,
    random_state: int = DEFAULT_RANDOM_STATE,
    force_rebuild: bool = False,
) -> dict[str, Any]:
    output_dir.mkdir(parents=True, exist_ok=True)
    partitions, prep_payload = prepare_datasets(
        split_dir,
        db_url=db_url,
        train_size=train_size,
        random_state=random_state,
        force_rebuild=force_rebuild,
    )
    train_df = partitions["training"]

    means = summarize_feature_means(train_df)
    means_csv = output_dir / "feature-means.csv"
    means.to_csv(means_csv, index=False)
    scatter_png = plot_tokens_vs_tfidf(train_df, output_dir / "tokens_vs_tfidf.png")

    payload = {
        "prepare": prep_payload,
        "feature_means": means.to_dict(orient="records"),
        "artifacts": {
            "feature_means_csv": str(means_csv),
            "tokens_vs_tfidf_png": str(scatter_png),
        },
    }
    save_json(output_dir / "summary_report.json", payload)
    return payload
