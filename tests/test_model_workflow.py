from __future__ import annotations

import json

import joblib
import numpy as np
import pandas as pd
import pytest

from apb_common import compute_confusion_summary, compute_metrics
from apb_standalone.dataset_workflow import prepare_datasets
from apb_standalone.model_workflow import (
    preprocess_partitions,
    summarize_feature_means,
    summarize_training_data,
    train_baseline,
)


@pytest.fixture
def partitions(db_url, split_dir):
    parts, _ = prepare_datasets(split_dir, db_url=db_url)
    return parts


def test_preprocessor_is_fit_on_training_only(partitions):
    train_df = partitions["training"]
    test_df = partitions["testing"]
    _, x_train, x_test = preprocess_partitions(train_df, test_df)

    for col in ("tokens", "tfidf", "proportion", "runs_pval"):
        scaled = x_train[f"num__{col}"]
        assert abs(scaled.mean()) < 1e-9
        assert scaled.std(ddof=0) == pytest.approx(1.0)

        mean = train_df[col].astype(float).mean()
        std = train_df[col].astype(float).std(ddof=0)
        expected = (test_df[col].astype(float) - mean) / std
        np.testing.assert_allclose(x_test[f"num__{col}"].to_numpy(), expected.to_numpy(), atol=1e-9)

    assert {"cat__lds_lds", "cat__lds_not-lds"} <= set(x_train.columns)
    assert list(x_train.columns) == list(x_test.columns)
    assert "match" not in {c.split("__")[-1] for c in x_train.columns}
    assert len(x_test) == len(test_df)


def test_feature_means_by_label(partitions):
    train_df = partitions["training"]
    means = summarize_feature_means(train_df)

    assert means["match"].astype(str).tolist() == ["quotation", "noise"]
    assert int(means["rows"].sum()) == len(train_df)
    quotation = means[means["match"] == "quotation"].iloc[0]
    expected = train_df.loc[train_df["match"] == "quotation", "tokens"].mean()
    assert quotation["tokens"] == pytest.approx(expected)
    assert quotation["tokens"] > means[means["match"] == "noise"].iloc[0]["tokens"]


def test_confusion_summary():
    summary = compute_confusion_summary(np.array([1, 1, 0, 0, 0]), np.array([1, 0, 0, 0, 1]))

    assert summary["matrix"] == [[1, 1], [1, 2]]
    assert (summary["tp"], summary["fn"], summary["fp"], summary["tn"]) == (1, 1, 1, 2)
    assert summary["sensitivity"] == pytest.approx(0.5)
    assert summary["specificity"] == pytest.approx(2 / 3)


def test_metrics_with_single_class_roc_is_nan():
    y = pd.Series([1, 1, 1])
    metrics = compute_metrics(y, np.array([1, 1, 0]), np.array([0.9, 0.8, 0.3]))
    assert np.isnan(metrics["roc_auc"])
    assert metrics["accuracy"] == pytest.approx(2 / 3)


def test_train_baseline_reports_training_metrics(db_url, split_dir, tmp_path):
    output_dir = tmp_path / "models"
    report = train_baseline(split_dir, output_dir, db_url=db_url)

    evaluation = report["training_evaluation"]
    for name in ("accuracy", "roc_auc", "pr_auc"):
        assert 0.0 <= evaluation["metrics"][name] <= 1.0
    assert evaluation["metrics"]["roc_auc"] > 0.9

    confusion = evaluation["confusion_matrix"]
    assert confusion["tp"] + confusion["fp"] + confusion["tn"] + confusion["fn"] == report["training_rows"]
    assert 0.0 <= confusion["sensitivity"] <= 1.0
    assert 0.0 <= confusion["specificity"] <= 1.0
    assert report["training_rows"] + report["testing_rows"] == 228

    assert (output_dir / "roc_curve_training.png").stat().st_size > 0
    saved = json.loads((output_dir / "training_report.json").read_text(encoding="utf-8"))
    assert saved["positive_label"] == "quotation"

    pipe = joblib.load(output_dir / "baseline_logreg.joblib")
    parts, _ = prepare_datasets(split_dir)
    prob = pipe.predict_proba(parts["testing"].drop(columns=["match"]))[:, 1]
    assert prob.shape == (report["testing_rows"],)


def test_summarize_training_data_writes_artifacts(db_url, split_dir, tmp_path):
    output_dir = tmp_path / "summary"
    payload = summarize_training_data(split_dir, output_dir, db_url=db_url)

    assert (output_dir / "feature-means.csv").exists()
    assert (output_dir / "tokens_vs_tfidf.png").stat().st_size > 0
    assert [row["match"] for row in payload["feature_means"]] == ["quotation", "noise"]
