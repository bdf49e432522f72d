"""
Offline evaluation pipeline

Runs each algorithm over every fold of an evaluation scheme, scores the
Top-N lists and rating predictions with the metric engine, and collects the
results in polars DataFrames for tabulation.
"""

from typing import Callable, Dict, Hashable, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from scipy.stats import ttest_rel, wilcoxon

from evaluation_metrics import (
    catalog_coverage,
    check_item_alignment,
    diversity,
    f1_score,
    item_popularity,
    jaccard_item_similarity,
    normalize_popularity,
    novelty,
    per_user_precision_recall,
    precision_recall,
    rating_error,
    serendipity,
    unpopular_item_set,
)
from evaluation_scheme import EvaluationScheme, EvaluationSplit
from recommendation_models import BaseRecommender
from recsys_common import (
    DEFAULT_N,
    ITEM_COL,
    RANDOM_SEED,
    RATING_COL,
    SERENDIPITY_PERCENTILE,
    USER_COL,
    logger,
    validate_dataframe_schema,
    validate_n_parameter,
)

RecommenderFactory = Callable[[], BaseRecommender]

TOPN_METRICS = ['precision', 'recall', 'f1', 'novelty', 'diversity', 'serendipity', 'coverage']
RATING_METRICS = ['rmse', 'mae']


def flag_insufficient_data(
    results: pl.DataFrame,
    metrics: Optional[Sequence[str]] = None
) -> pl.DataFrame:
    """
    Mark result rows whose metrics are undefined (NaN)

    An undefined aggregate means no user had data for the metric under this
    configuration; it is kept as NaN instead of being reported as 0.

    Args:
        results: Result table from evaluate_topn or evaluate_ratings
        metrics: Metric columns to inspect, defaults to every known metric column

    Returns:
        Results with a boolean 'insufficient_data' column
    """
    if metrics is None:
        metrics = TOPN_METRICS + RATING_METRICS
    metrics = [m for m in metrics if m in results.columns]
    if not metrics or results.height == 0:
        return results.with_columns(pl.lit(False).alias('insufficient_data'))

    flagged = results.with_columns(
        pl.any_horizontal([pl.col(m).is_nan() for m in metrics]).alias('insufficient_data')
    )
    for row in flagged.filter(pl.col('insufficient_data')).iter_rows(named=True):
        details = ', '.join(f"{k}={row[k]}" for k in ('algorithm', 'fold', 'n') if k in row)
        undefined = [m for m in metrics if row[m] is not None and np.isnan(row[m])]
        logger.warning(f"Insufficient data for this configuration ({details}): "
                       f"{', '.join(undefined)} undefined")
    return flagged


def evaluate_topn(
    scheme: EvaluationScheme,
    algorithms: Mapping[str, RecommenderFactory],
    n_values: Iterable[int] = (DEFAULT_N,),
    reference: Optional[pl.DataFrame] = None,
    unpopular_percentile: float = SERENDIPITY_PERCENTILE,
    check_alignment: bool = True
) -> pl.DataFrame:
    """
    Evaluate Top-N lists of several algorithms over every fold of a scheme

    Args:
        scheme: Evaluation scheme providing the folds
        algorithms: Dict mapping a label to a factory returning an unfitted model
        n_values: List lengths to evaluate
        reference: Rating matrix for popularity and similarity side data,
            defaults to the scheme's full rating matrix
        unpopular_percentile: Popularity percentile below which items are unpopular
        check_alignment: Verify recommended and relevant ids belong to the reference catalog

    Returns:
        DataFrame with one row per algorithm, fold and n
    """
    if not algorithms:
        raise ValueError("algorithms must not be empty")
    n_values = sorted(set(n_values))
    if not n_values:
        raise ValueError("n_values must not be empty")
    for n in n_values:
        validate_n_parameter(n)

    reference = scheme.ratings if reference is None else reference
    validate_dataframe_schema(reference, [USER_COL, ITEM_COL])

    catalog = reference[ITEM_COL].unique(maintain_order=True).to_list()
    counts = item_popularity(reference, items=catalog)
    popularity = normalize_popularity(counts)
    unpopular = unpopular_item_set(counts, percentile=unpopular_percentile)
    similarity = jaccard_item_similarity(reference, items=catalog)
    logger.info(f"Side data: {len(catalog):,} items, {len(unpopular):,} below the "
                f"{unpopular_percentile}th popularity percentile")

    rows = []
    for split in scheme.splits():
        relevant = split.relevant_items()
        users = split.evaluation_users()

        for label, factory in algorithms.items():
            model = factory().fit(split.train)
            top_lists = model.recommend_all(split.known, n=n_values[-1], users=users)
            if check_alignment:
                check_item_alignment(top_lists, relevant, catalog)

            for n in n_values:
                recommended = {user_id: recs[:n] for user_id, recs in top_lists.items()}
                scores = precision_recall(recommended, relevant, n)
                rows.append({
                    'algorithm': label,
                    'fold': split.fold,
                    'n': n,
                    'precision': scores['precision'],
                    'recall': scores['recall'],
                    'f1': f1_score(scores['precision'], scores['recall']),
                    'novelty': novelty(recommended, popularity),
                    'diversity': diversity(recommended, similarity),
                    'serendipity': serendipity(recommended, relevant, unpopular),
                    'coverage': catalog_coverage(recommended, len(catalog)),
                    'users': sum(1 for recs in recommended.values() if recs),
                })
            logger.info(f"Evaluated {label} on fold {split.fold} for n={n_values}")

    results = pl.DataFrame(rows)
    return flag_insufficient_data(results, metrics=TOPN_METRICS)


def evaluate_ratings(
    scheme: EvaluationScheme,
    algorithms: Mapping[str, RecommenderFactory]
) -> pl.DataFrame:
    """
    Evaluate rating predictions (RMSE / MAE) of several algorithms

    Args:
        scheme: Evaluation scheme providing the folds
        algorithms: Dict mapping a label to a factory returning an unfitted model

    Returns:
        DataFrame with algorithm, fold, rmse, mae and the number of scored pairs
    """
    if not algorithms:
        raise ValueError("algorithms must not be empty")

    rows = []
    for split in scheme.splits():
        actual = split.actual_ratings()

        for label, factory in algorithms.items():
            model = factory().fit(split.train)
            predicted_df = model.predict_ratings(split.known)
            predicted = dict(zip(
                zip(predicted_df[USER_COL].to_list(), predicted_df[ITEM_COL].to_list()),
                predicted_df[RATING_COL].to_list()
            ))

            errors = rating_error(predicted, actual)
            rows.append({
                'algorithm': label,
                'fold': split.fold,
                'rmse': errors['rmse'],
                'mae': errors['mae'],
                'pairs': sum(1 for pair in actual if pair in predicted),
            })
            logger.info(f"{label} fold {split.fold}: RMSE={errors['rmse']:.4f}, MAE={errors['mae']:.4f}")

    results = pl.DataFrame(rows)
    return flag_insufficient_data(results, metrics=RATING_METRICS)


def summarize(results: pl.DataFrame, by: Union[str, Sequence[str]] = 'algorithm') -> pl.DataFrame:
    """
    Average metrics over folds, per group (and per n for Top-N results)

    Folds where a metric is undefined are skipped; a metric undefined in
    every fold stays NaN.

    Args:
        results: Result table from evaluate_topn or evaluate_ratings
        by: Column or columns to group on
    """
    keys = [by] if isinstance(by, str) else list(by)
    if 'n' in results.columns and 'n' not in keys:
        keys.append('n')
    metrics = [m for m in TOPN_METRICS + RATING_METRICS if m in results.columns]

    return (results
            .group_by(keys, maintain_order=True)
            .agg([pl.col(m).fill_nan(None).mean().fill_null(float('nan')) for m in metrics]
                 + [pl.len().alias('folds')]))


def per_user_metrics(
    model: BaseRecommender,
    split: EvaluationSplit,
    n: int = DEFAULT_N
) -> Dict[str, Dict[Hashable, float]]:
    """
    Per-user precision and recall of a fitted model on one fold

    Returns:
        Dict with 'precision' and 'recall', each mapping user_id to its score
    """
    recommended = model.recommend_all(split.known, n=n, users=split.evaluation_users())
    precision, recall = per_user_precision_recall(recommended, split.relevant_items(), n)
    return {'precision': precision, 'recall': recall}


def statistical_comparison(
    scores1: Mapping[Hashable, float],
    scores2: Mapping[Hashable, float],
    alpha: float = 0.05
) -> Dict[str, float]:
    """
    Statistical comparison between two models using paired tests

    Args:
        scores1: Per-user metric values from model 1
        scores2: Per-user metric values from model 2
        alpha: Significance level

    Returns:
        Dictionary with test statistics and p-values over the users both models scored
    """
    users = [u for u in scores1 if u in scores2]
    if len(users) < 2:
        raise ValueError(f"Need at least 2 users scored by both models, got {len(users)}")

    values1 = np.array([scores1[u] for u in users], dtype=float)
    values2 = np.array([scores2[u] for u in users], dtype=float)

    # Paired t-test
    t_stat, t_pvalue = ttest_rel(values1, values2)

    # Wilcoxon signed-rank test (non-parametric alternative)
    try:
        w_stat, w_pvalue = wilcoxon(values1, values2)
    except ValueError:
        w_stat, w_pvalue = np.nan, np.nan

    # Effect size (Cohen's d)
    diff = values1 - values2
    cohens_d = np.mean(diff) / np.std(diff) if np.std(diff) > 0 else 0.0

    return {
        't_statistic': float(t_stat),
        't_pvalue': float(t_pvalue),
        'wilcoxon_statistic': float(w_stat),
        'wilcoxon_pvalue': float(w_pvalue),
        'cohens_d': float(cohens_d),
        'significant': bool(t_pvalue < alpha),
        'mean_diff': float(np.mean(diff)),
        'model1_mean': float(np.mean(values1)),
        'model2_mean': float(np.mean(values2)),
        'users': len(users),
    }


def bootstrap_confidence_interval(
    metric_values: Sequence[float],
    n_bootstrap: int = 1000,
    confidence: float = 0.95,
    random_state: int = RANDOM_SEED
) -> Tuple[float, float, float]:
    """
    Compute confidence interval via bootstrap

    Args:
        metric_values: List of metric values
        n_bootstrap: Number of bootstrap samples
        confidence: Confidence level (e.g., 0.95 for 95%)
        random_state: Random seed

    Returns:
        Tuple of (mean, lower_bound, upper_bound)
    """
    if len(metric_values) == 0:
        raise ValueError("metric_values must not be empty")
    if not 0 < confidence < 1:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    rng = np.random.default_rng(random_state)
    metric_values = np.asarray(metric_values, dtype=float)

    samples = rng.choice(metric_values, size=(n_bootstrap, len(metric_values)), replace=True)
    bootstrapped_means = samples.mean(axis=1)

    alpha = 1 - confidence
    lower = np.percentile(bootstrapped_means, 100 * alpha / 2)
    upper = np.percentile(bootstrapped_means, 100 * (1 - alpha / 2))
    mean = np.mean(metric_values)

    return float(mean), float(lower), float(upper)
