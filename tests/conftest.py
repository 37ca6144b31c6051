from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from sqlalchemy import create_engine

from apb_common import LABELED_TABLE, QUOTATIONS_TABLE, SCRIPTURES_TABLE

VERSIONS = [
    "King James Version",
    "Douay-Rheims",
    "Book of Mormon",
    "Doctrine and Covenants",
    "Pearl of Great Price",
    "Revised Version",
]


@pytest.fixture
def example_tables() -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    labeled = pd.DataFrame(
        {
            "doc_id": ["doc1", "doc1"],
            "verse_id": ["verse1", "verse2"],
            "match": [True, False],
        }
    )
    quotations = pd.DataFrame(
        {
            "doc_id": ["doc1", "doc1"],
            "verse_id": ["verse1", "verse2"],
            "tokens": [12, 5],
            "tfidf": [3.2, 0.1],
            "proportion": [0.8, 0.1],
            "runs_pval": [0.04, np.nan],
        }
    )
    scriptures = pd.DataFrame(
        {
            "verse_id": ["verse1", "verse2"],
            "version": ["King James Version", "Book of Mormon"],
        }
    )
    return labeled, quotations, scriptures


@pytest.fixture
def source_tables() -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Synthetic source relations: 240 labeled pairs, 12 of them without feature rows."""
    rng = np.random.default_rng(7)
    n_pairs = 240
    doc_ids = [f"doc{i % 30}" for i in range(n_pairs)]
    verse_ids = [f"verse{i}" for i in range(n_pairs)]
    match = rng.random(n_pairs) < 0.3

    labeled = pd.DataFrame({"doc_id": doc_ids, "verse_id": verse_ids, "match": match})

    tokens = np.where(match, rng.integers(6, 40, n_pairs), rng.integers(1, 10, n_pairs))
    tfidf = np.where(match, rng.uniform(1.0, 6.0, n_pairs), rng.uniform(0.0, 1.5, n_pairs))
    proportion = np.where(match, rng.uniform(0.4, 1.0, n_pairs), rng.uniform(0.0, 0.5, n_pairs))
    runs_pval = rng.uniform(0.0, 1.0, n_pairs)
    runs_pval[rng.random(n_pairs) < 0.15] = np.nan
    quotations = pd.DataFrame(
        {
            "doc_id": doc_ids,
            "verse_id": verse_ids,
            "tokens": tokens,
            "tfidf": tfidf,
            "proportion": proportion,
            "runs_pval": runs_pval,
        }
    )
    # Labeled pairs with no feature measurement are dropped by the assembler.
    quotations = quotations.drop(index=range(0, n_pairs, 20)).reset_index(drop=True)
    # Unlabeled measurements never reach the dataset.
    extra = quotations.head(5).copy()
    extra["doc_id"] = "unlabeled-doc"
    quotations = pd.concat([quotations, extra], ignore_index=True)

    versions = [VERSIONS[i % len(VERSIONS)] for i in range(n_pairs)]
    versions[1] = "Septuagint"
    scriptures = pd.DataFrame({"verse_id": verse_ids, "version": versions})
    # verse3 has no scripture row at all.
    scriptures = scriptures[scriptures["verse_id"] != "verse3"].reset_index(drop=True)
    return labeled, quotations, scriptures


@pytest.fixture
def db_url(tmp_path, source_tables) -> str:
    labeled, quotations, scriptures = source_tables
    url = f"sqlite:///{tmp_path / 'apb.sqlite'}"
    engine = create_engine(url)
    try:
        labeled.to_sql(LABELED_TABLE, engine, index=False)
        quotations.to_sql(QUOTATIONS_TABLE, engine, index=False)
        scriptures.assign(book="Genesis").to_sql(SCRIPTURES_TABLE, engine, index=False)
    finally:
        engine.dispose()
    return url


@pytest.fixture
def split_dir(tmp_path):
    return tmp_path / "splits"
