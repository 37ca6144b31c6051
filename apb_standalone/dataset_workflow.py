from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pandas as pd
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from apb_common import (
    DEFAULT_RANDOM_STATE,
    DEFAULT_TRAIN_SIZE,
    DOC_ID_COL,
    GROUP_COL,
    LABELED_COLUMNS,
    LABELED_TABLE,
    LDS_GROUP,
    LDS_VERSIONS,
    MATCH_COL,
    NEGATIVE_LABEL,
    NOT_LDS_GROUP,
    NUMERIC_FEATURES,
    POSITIVE_LABEL,
    QUOTATIONS_TABLE,
    RUNS_PVAL_COL,
    SCRIPTURES_TABLE,
    SPLIT_SUMMARY_NAME,
    TOKENS_COL,
    VERSE_ID_COL,
    VERSION_COL,
    class_distribution,
    clean_partition,
    coerce_labeled_schema,
    read_labeled_csv,
    save_json,
    split_cache_exists,
    split_cache_paths,
    stratified_train_test_split,
    write_labeled_csv,
)

DATABASE_URL_ENV = "APB_DATABASE_URL"


def resolve_database_url(db_url: str | None) -> str:
    url = (db_url or os.getenv(DATABASE_URL_ENV, "")).strip()
    if not url:
        raise ValueError(f"No database URL given. Pass --db-url or set {DATABASE_URL_ENV}.")
    return url


def load_source_tables(engine: Engine) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    labeled = pd.read_sql_query(
        f"SELECT {DOC_ID_COL}, {VERSE_ID_COL}, {MATCH_COL} FROM {LABELED_TABLE}",
        engine,
    )
    quotations = pd.read_sql_query(
        f"SELECT {DOC_ID_COL}, {VERSE_ID_COL}, {', '.join(NUMERIC_FEATURES)} FROM {QUOTATIONS_TABLE}",
        engine,
    )
    scriptures = pd.read_sql_query(
        f"SELECT {VERSE_ID_COL}, {VERSION_COL} FROM {SCRIPTURES_TABLE}",
        engine,
    )
    return labeled, quotations, scriptures


def _as_string_keys(df: pd.DataFrame, cols: list[str]) -> pd.DataFrame:
    out = df.copy()
    for col in cols:
        out[col] = out[col].astype(str)
    return out


def derive_group(version: pd.Series) -> pd.Series:
    return version.isin(LDS_VERSIONS).map({True: LDS_GROUP, False: NOT_LDS_GROUP})


def assemble_labeled_quotations(
    labeled: pd.DataFrame,
    quotations: pd.DataFrame,
    scriptures: pd.DataFrame,
) -> pd.DataFrame:
    """
    Join labels to their feature measurements and scripture versions.

    Rows without a feature match (missing token count) are dropped; the boolean
    label is recoded to quotation/noise and the version name is collapsed to
    the lds/not-lds grouping.
    """
    keys = [DOC_ID_COL, VERSE_ID_COL]
    labeled = _as_string_keys(labeled, keys)
    quotations = _as_string_keys(quotations, keys)
    scriptures = _as_string_keys(scriptures[[VERSE_ID_COL, VERSION_COL]], [VERSE_ID_COL])

    df = labeled.merge(quotations, on=keys, how="left", validate="one_to_one")
    df = df.merge(scriptures, on=VERSE_ID_COL, how="left", validate="many_to_one")
    df = df[df[TOKENS_COL].notna() & df[MATCH_COL].notna()].copy()

    df[MATCH_COL] = df[MATCH_COL].astype(bool).map({True: POSITIVE_LABEL, False: NEGATIVE_LABEL})
    df[GROUP_COL] = derive_group(df[VERSION_COL])
    df = df.drop(columns=[VERSION_COL])
    return coerce_labeled_schema(df[LABELED_COLUMNS])


def assemble_from_database(db_url: str) -> pd.DataFrame:
    engine = create_engine(db_url)
    try:
        labeled, quotations, scriptures = load_source_tables(engine)
    finally:
        engine.dispose()
    return assemble_labeled_quotations(labeled, quotations, scriptures)


def materialize_or_load_split(
    split_dir: Path,
    *,
    db_url: str | None = None,
    train_size: float = DEFAULT_TRAIN_SIZE,
    random_state: int = DEFAULT_RANDOM_STATE,
    force_rebuild: bool = False,
) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, dict[str, Any]]:
    split_dir = Path(split_dir)
    paths = split_cache_paths(split_dir)

    if not force_rebuild and split_cache_exists(split_dir):
        print(f"[split-cache] loading from cache: {split_dir}")
        full_df = read_labeled_csv(paths["full"])
        train_df = read_labeled_csv(paths["training"])
        test_df = read_labeled_csv(paths["testing"])
        summary = {
            "source": "cache",
            "split_dir": str(split_dir),
            "full": class_distribution(full_df),
            "training": class_distribution(train_df),
            "testing": class_distribution(test_df),
        }
        return full_df, train_df, test_df, summary

    print(f"[split-cache] recomputing from source; writing split to {split_dir}")
    full_df = assemble_from_database(resolve_database_url(db_url))
    train_df, test_df, summary = stratified_train_test_split(
        full_df,
        train_size=train_size,
        random_state=random_state,
    )
    summary["source"] = "database"
    summary["split_dir"] = str(split_dir)

    split_dir.mkdir(parents=True, exist_ok=True)
    write_labeled_csv(full_df, paths["full"])
    write_labeled_csv(train_df, paths["training"])
    write_labeled_csv(test_df, paths["testing"])
    save_json(split_dir / SPLIT_SUMMARY_NAME, summary)
    return full_df, train_df, test_df, summary


def prepare_datasets(
    split_dir: Path,
    *,
    db_url: str | None = None,
    train_size: float = DEFAULT_TRAIN_SIZE,
    random_state: int = DEFAULT_RANDOM_STATE,
    force_rebuild: bool = False,
) -> tuple[dict[str, pd.DataFrame], dict[str, Any]]:
    full_df, train_df, test_df, split_summary = materialize_or_load_split(
        split_dir,
        db_url=db_url,
        train_size=train_size,
        random_state=random_state,
        force_rebuild=force_rebuild,
    )
    partitions = {
        "full": clean_partition(full_df),
        "training": clean_partition(train_df),
        "testing": clean_partition(test_df),
    }
    payload = {
        "split": split_summary,
        "artifacts": {name: str(path) for name, path in split_cache_paths(split_dir).items()},
        "missing_runs_pval_filled": {
            "full": int(full_df[RUNS_PVAL_COL].isna().sum()),
            "training": int(train_df[RUNS_PVAL_COL].isna().sum()),
            "testing": int(test_df[RUNS_PVAL_COL].isna().sum()),
        },
    }
    return partitions, payload
