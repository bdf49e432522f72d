"""
Top-N Evaluation Metrics

Pure functions over already-computed recommendation lists and ground truth.
Per-user values are averaged over the users for which the metric is defined;
when no user qualifies the aggregate is NaN rather than 0.
"""

import math
from itertools import combinations
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np
import pandas as pd
import polars as pl
from scipy.sparse import csr_matrix

from recsys_common import (
    ITEM_COL,
    USER_COL,
    SERENDIPITY_PERCENTILE,
    ItemAlignmentError,
    logger,
    validate_dataframe_schema,
    validate_list_length,
)

Recommendations = Mapping[Hashable, Sequence[Hashable]]
RelevantItems = Mapping[Hashable, Set[Hashable]]
SimilarityLookup = Union[pd.DataFrame, Mapping[Tuple[Hashable, Hashable], float]]


def _mean_defined(values: Iterable[float]) -> float:
    """Arithmetic mean of the defined per-user values, NaN when there are none"""
    values = list(values)
    if not values:
        return float('nan')
    return float(np.mean(values))


def _unique_in_order(items: Sequence[Hashable]) -> List[Hashable]:
    return list(dict.fromkeys(items))


def per_user_precision_recall(
    recommended: Recommendations,
    relevant: RelevantItems,
    n: int
) -> Tuple[Dict[Hashable, float], Dict[Hashable, float]]:
    """
    Per-user Precision@N and Recall@N

    Precision is defined for users with a non-empty recommendation list,
    recall for users with a non-empty relevant set. Users missing from one of
    the mappings are treated as having an empty list or set.

    Args:
        recommended: Dict mapping user_id to ranked list of recommended items
        relevant: Dict mapping user_id to set of relevant (withheld) items
        n: Length of the recommendation list

    Returns:
        Tuple of (precision by user, recall by user), undefined users omitted
    """
    validate_list_length(n)

    precision = {}
    recall = {}
    for user_id in set(recommended) | set(relevant):
        top_n = set(recommended.get(user_id, [])[:n])
        actual = relevant.get(user_id, set())
        hits = len(top_n & actual)

        if top_n:
            precision[user_id] = hits / n
        if actual:
            recall[user_id] = hits / len(actual)

    return precision, recall


def precision_recall(
    recommended: Recommendations,
    relevant: RelevantItems,
    n: int
) -> Dict[str, float]:
    """
    Precision@N and Recall@N averaged over users

    Args:
        recommended: Dict mapping user_id to ranked list of recommended items
        relevant: Dict mapping user_id to set of relevant items
        n: Length of the recommendation list

    Returns:
        Dictionary with 'precision' and 'recall' (NaN if undefined for all users)
    """
    precision, recall = per_user_precision_recall(recommended, relevant, n)
    return {
        'precision': _mean_defined(precision.values()),
        'recall': _mean_defined(recall.values()),
    }


def f1_score(precision: float, recall: float) -> float:
    """Harmonic mean of precision and recall"""
    if math.isnan(precision) or math.isnan(recall):
        return float('nan')
    if precision + recall == 0:
        return 0.0
    return 2 * (precision * recall) / (precision + recall)


def hit_rate(recommended: Recommendations, relevant: RelevantItems, n: int) -> float:
    """
    Hit Rate@N: share of users with at least one relevant item in their top-N

    Defined for users with a non-empty relevant set.
    """
    validate_list_length(n)
    hits = []
    for user_id, actual in relevant.items():
        if not actual:
            continue
        top_n = set(recommended.get(user_id, [])[:n])
        hits.append(1.0 if top_n & actual else 0.0)
    return _mean_defined(hits)


def ndcg(recommended: Recommendations, relevant: RelevantItems, n: int) -> float:
    """
    NDCG@N with binary relevance

    Args:
        recommended: Dict mapping user_id to ranked list of recommended items
        relevant: Dict mapping user_id to set of relevant items
        n: Length of the recommendation list

    Returns:
        Mean NDCG@N over users with a non-empty relevant set
    """
    validate_list_length(n)
    scores = []
    for user_id, actual in relevant.items():
        if not actual:
            continue

        dcg = 0.0
        for rank, item in enumerate(recommended.get(user_id, [])[:n]):
            if item in actual:
                dcg += 1.0 / np.log2(rank + 2)

        idcg = sum(1.0 / np.log2(rank + 2) for rank in range(min(len(actual), n)))
        scores.append(dcg / idcg)

    return _mean_defined(scores)


def catalog_coverage(recommended: Recommendations, catalog_size: int) -> float:
    """
    Catalog Coverage: share of the catalog recommended to at least one user

    Raises:
        ValueError: If catalog_size is not positive
    """
    if catalog_size <= 0:
        raise ValueError(f"catalog_size must be positive, got {catalog_size}")
    unique_items = set()
    for recs in recommended.values():
        unique_items.update(recs)
    return len(unique_items) / catalog_size


def novelty(recommended: Recommendations, popularity: Mapping[Hashable, float]) -> float:
    """
    Novelty: one minus the mean normalized popularity of the recommended items

    Args:
        recommended: Dict mapping user_id to list of recommended items
        popularity: Dict mapping item_id to normalized popularity in [0, 1]

    Returns:
        Mean novelty over users with a non-empty recommendation list

    Raises:
        ItemAlignmentError: If a recommended item has no popularity value
        ValueError: If a popularity value lies outside [0, 1]
    """
    novelties = []
    for user_id, rec_list in recommended.items():
        if len(rec_list) == 0:
            continue

        missing = [item for item in rec_list if item not in popularity]
        if missing:
            raise ItemAlignmentError(
                f"Items recommended to user {user_id} missing from popularity map: {missing[:10]}"
            )

        pops = np.array([popularity[item] for item in rec_list], dtype=float)
        if np.any((pops < 0) | (pops > 1)):
            raise ValueError(
                f"Popularity values must be normalized to [0, 1], got range "
                f"[{pops.min()}, {pops.max()}] for user {user_id}"
            )
        novelties.append(1.0 - float(pops.mean()))

    return _mean_defined(novelties)


def _list_diversity(items: List[Hashable], similarity: SimilarityLookup) -> float:
    if isinstance(similarity, pd.DataFrame):
        missing = [item for item in items
                   if item not in similarity.index or item not in similarity.columns]
        if missing:
            raise ItemAlignmentError(f"Items missing from similarity matrix: {missing[:10]}")

        # Upper triangle of the induced submatrix, diagonal excluded
        sub = similarity.loc[items, items].to_numpy(dtype=float)
        upper = np.triu_indices(len(items), k=1)
        return float(np.mean(1.0 - sub[upper]))

    dissimilarities = []
    for item_i, item_j in combinations(items, 2):
        if (item_i, item_j) in similarity:
            sim = similarity[(item_i, item_j)]
        elif (item_j, item_i) in similarity:
            sim = similarity[(item_j, item_i)]
        else:
            raise ItemAlignmentError(
                f"Item pair ({item_i!r}, {item_j!r}) missing from similarity map"
            )
        dissimilarities.append(1.0 - float(sim))
    return float(np.mean(dissimilarities))


def diversity(recommended: Recommendations, similarity: SimilarityLookup) -> float:
    """
    Diversity: average pairwise dissimilarity within each recommendation list

    Args:
        recommended: Dict mapping user_id to list of recommended items
        similarity: Item-item similarity, either a square DataFrame labelled by
            item id or a mapping of (item, item) pairs to a value in [0, 1]

    Returns:
        Mean intra-list diversity over users with at least two distinct items

    Raises:
        ItemAlignmentError: If an item or pair is absent from the similarity data
    """
    diversities = []
    for rec_list in recommended.values():
        items = _unique_in_order(rec_list)
        if len(items) < 2:
            continue
        diversities.append(_list_diversity(items, similarity))

    return _mean_defined(diversities)


def serendipity(
    recommended: Recommendations,
    relevant: RelevantItems,
    unpopular_items: Set[Hashable]
) -> float:
    """
    Serendipity: fraction of recommended items that are relevant and unpopular

    Args:
        recommended: Dict mapping user_id to list of recommended items
        relevant: Dict mapping user_id to set of relevant items
        unpopular_items: Items below the popularity cutoff

    Returns:
        Mean serendipity over users with a non-empty recommendation list
    """
    scores = []
    for user_id, rec_list in recommended.items():
        if len(rec_list) == 0:
            continue

        actual = relevant.get(user_id, set())
        serendipitous = [item for item in rec_list if item in actual and item in unpopular_items]
        scores.append(len(serendipitous) / len(rec_list))

    return _mean_defined(scores)


def rating_error(
    predicted: Mapping[Tuple[Hashable, Hashable], Optional[float]],
    actual: Mapping[Tuple[Hashable, Hashable], float]
) -> Dict[str, float]:
    """
    RMSE and MAE over (user, item) pairs present in both mappings

    Pairs whose prediction is missing (None or NaN) are excluded.

    Args:
        predicted: Dict mapping (user_id, item_id) to predicted rating
        actual: Dict mapping (user_id, item_id) to withheld rating

    Returns:
        Dictionary with 'rmse' and 'mae' (NaN when no pair qualifies)
    """
    errors = []
    for pair, true_rating in actual.items():
        pred = predicted.get(pair)
        if pred is None or true_rating is None:
            continue
        if math.isnan(pred) or math.isnan(true_rating):
            continue
        errors.append(pred - true_rating)

    if not errors:
        return {'rmse': float('nan'), 'mae': float('nan')}

    errors = np.array(errors, dtype=float)
    return {
        'rmse': float(np.sqrt(np.mean(errors ** 2))),
        'mae': float(np.mean(np.abs(errors))),
    }


def item_popularity(
    ratings: pl.DataFrame,
    items: Optional[Iterable[Hashable]] = None
) -> Dict[Hashable, int]:
    """
    Count the ratings each item received

    Args:
        ratings: Reference ratings DataFrame
        items: Optional catalog; catalog items without ratings get a count of 0

    Returns:
        Dict mapping item_id to rating count
    """
    validate_dataframe_schema(ratings, [ITEM_COL])

    counts = {item: 0 for item in items} if items is not None else {}
    if ratings.height > 0:
        per_item = ratings.group_by(ITEM_COL).agg(pl.len().alias('count'))
        counts.update(zip(per_item[ITEM_COL].to_list(), per_item['count'].to_list()))
    return counts


def normalize_popularity(counts: Mapping[Hashable, int]) -> Dict[Hashable, float]:
    """Divide each popularity count by the maximum count"""
    if not counts:
        return {}
    max_count = max(counts.values())
    if max_count <= 0:
        return {item: 0.0 for item in counts}
    return {item: count / max_count for item, count in counts.items()}


def unpopular_item_set(
    counts: Mapping[Hashable, int],
    percentile: float = SERENDIPITY_PERCENTILE
) -> Set[Hashable]:
    """
    Items whose popularity count falls below the given percentile of all counts

    The cutoff uses linear interpolation between order statistics, so the
    same counts always produce the same set.

    Args:
        counts: Dict mapping item_id to rating count
        percentile: Percentile in [0, 100] used as the popularity cutoff

    Returns:
        Set of unpopular item ids
    """
    if not 0 <= percentile <= 100:
        raise ValueError(f"percentile must be in [0, 100], got {percentile}")
    if not counts:
        return set()

    cutoff = np.percentile(np.fromiter(counts.values(), dtype=float), percentile)
    logger.debug(f"Popularity cutoff at the {percentile}th percentile: {cutoff:.2f}")
    return {item for item, count in counts.items() if count < cutoff}


def jaccard_item_similarity(
    ratings: pl.DataFrame,
    items: Optional[Sequence[Hashable]] = None
) -> pd.DataFrame:
    """
    Jaccard similarity between items over the sets of users who rated them

    Args:
        ratings: Reference ratings DataFrame with userId and itemId columns
        items: Optional catalog order; defaults to the rated items in order of appearance

    Returns:
        Square DataFrame indexed by item id on both axes with values in [0, 1]
    """
    validate_dataframe_schema(ratings, [USER_COL, ITEM_COL])

    pairs = ratings.select([USER_COL, ITEM_COL]).unique(maintain_order=True)
    if items is None:
        items = pairs[ITEM_COL].unique(maintain_order=True).to_list()
    else:
        items = list(items)
        pairs = pairs.filter(pl.col(ITEM_COL).is_in(items))

    item_map = {item: i for i, item in enumerate(items)}
    users = pairs[USER_COL].unique(maintain_order=True).to_list()
    user_map = {user: u for u, user in enumerate(users)}

    rows = [user_map[user] for user in pairs[USER_COL].to_list()]
    cols = [item_map[item] for item in pairs[ITEM_COL].to_list()]
    X = csr_matrix(
        (np.ones(len(rows)), (rows, cols)),
        shape=(len(users), len(items))
    )

    # Co-rating counts; the diagonal holds each item's own count
    co_counts = (X.T @ X).toarray()
    item_counts = np.diag(co_counts)
    union = item_counts[:, None] + item_counts[None, :] - co_counts

    similarity = np.zeros_like(co_counts, dtype=float)
    np.divide(co_counts, union, out=similarity, where=union > 0)

    logger.debug(f"Built Jaccard similarity for {len(items):,} items over {len(users):,} users")
    return pd.DataFrame(similarity, index=items, columns=items)


def check_item_alignment(
    recommended: Recommendations,
    relevant: RelevantItems,
    catalog: Iterable[Hashable]
) -> None:
    """
    Verify that recommended and relevant item ids come from the same catalog

    Raises:
        ItemAlignmentError: If any id lies outside the catalog
    """
    catalog = set(catalog)

    stray_recommended = set()
    for rec_list in recommended.values():
        stray_recommended.update(item for item in rec_list if item not in catalog)

    stray_relevant = set()
    for actual in relevant.values():
        stray_relevant.update(actual - catalog)

    if stray_recommended or stray_relevant:
        raise ItemAlignmentError(
            f"Item ids outside the catalog: {len(stray_recommended)} recommended "
            f"(e.g. {sorted(map(str, stray_recommended))[:5]}), {len(stray_relevant)} relevant "
            f"(e.g. {sorted(map(str, stray_relevant))[:5]})"
        )
