"""
Evaluation schemes for offline Top-N evaluation

Partitions a long-format rating matrix into train / known / unknown data
under a random split, k-fold cross-validation or leave-one-out protocol.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, Iterator, List, Optional, Set, Tuple, Union

import numpy as np
import polars as pl

from recsys_common import (
    DEFAULT_GIVEN,
    DEFAULT_K_FOLDS,
    DEFAULT_TRAIN_FRACTION,
    ITEM_COL,
    RANDOM_SEED,
    RATING_COL,
    RATING_COLUMNS,
    USER_COL,
    DataValidationError,
    logger,
    ratings_to_item_sets,
    validate_dataframe_schema,
)

ROW_COL = '_row'
METHODS = ('split', 'cross-validation', 'leave-one-out')


@dataclass(frozen=True, eq=False)
class EvaluationSplit:
    """
    One evaluation fold

    Attributes:
        train: Ratings available for fitting a model
        known: Ratings of the evaluation users revealed at prediction time
        unknown: Withheld ratings of the evaluation users (ground truth)
        fold: Fold index within the scheme
        good_rating: Threshold for relevant ratings, None to count every withheld item
    """
    train: pl.DataFrame
    known: pl.DataFrame
    unknown: pl.DataFrame
    fold: int = 0
    good_rating: Optional[float] = None

    def evaluation_users(self) -> List[Hashable]:
        return (pl.concat([self.known.select(USER_COL), self.unknown.select(USER_COL)])
                [USER_COL].unique(maintain_order=True).to_list())

    def known_items(self) -> Dict[Hashable, Set[Hashable]]:
        return ratings_to_item_sets(self.known)

    def unknown_items(self) -> Dict[Hashable, Set[Hashable]]:
        return ratings_to_item_sets(self.unknown)

    def relevant_items(self) -> Dict[Hashable, Set[Hashable]]:
        """
        Withheld items that count as relevant for each evaluation user

        Returns:
            Dict mapping every evaluation user to its (possibly empty) relevant set
        """
        unknown = self.unknown
        if self.good_rating is not None:
            unknown = unknown.filter(pl.col(RATING_COL) >= self.good_rating)

        relevant = ratings_to_item_sets(unknown)
        for user_id in self.evaluation_users():
            relevant.setdefault(user_id, set())
        return relevant

    def actual_ratings(self) -> Dict[Tuple[Hashable, Hashable], float]:
        """Withheld ratings keyed by (user_id, item_id)"""
        return dict(zip(
            zip(self.unknown[USER_COL].to_list(), self.unknown[ITEM_COL].to_list()),
            self.unknown[RATING_COL].to_list()
        ))


def _validate_given(given: Union[int, float]) -> None:
    if isinstance(given, bool):
        raise ValueError(f"given must be a non-zero integer or a fraction in (0, 1), got {given!r}")
    if isinstance(given, (int, np.integer)):
        if given == 0:
            raise ValueError("given must be a non-zero integer or a fraction in (0, 1), got 0")
        return
    if isinstance(given, (float, np.floating)) and 0 < given < 1:
        return
    raise ValueError(f"given must be a non-zero integer or a fraction in (0, 1), got {given!r}")


class EvaluationScheme:
    """
    Seeded evaluation protocol over a rating matrix

    Users are assigned to evaluation folds once at construction. For every
    evaluation user a `given` number of ratings is revealed as `known` and
    the rest is withheld as `unknown`. A fold's `train` data holds every
    rating except that fold's withheld ones, so each evaluation user also
    appears in training through its known ratings.
    """

    def __init__(
        self,
        ratings: pl.DataFrame,
        method: str = 'split',
        train: float = DEFAULT_TRAIN_FRACTION,
        k: Optional[int] = None,
        given: Optional[Union[int, float]] = None,
        good_rating: Optional[float] = None,
        seed: int = RANDOM_SEED
    ):
        """
        Initialize evaluation scheme

        Args:
            ratings: Ratings DataFrame with userId, itemId and rating columns
            method: 'split', 'cross-validation' or 'leave-one-out'
            train: Fraction of users used only for training ('split' only)
            k: Number of folds ('cross-validation' only)
            given: Ratings revealed per evaluation user. A positive integer is
                a count, a negative integer -m means all but m, a float in
                (0, 1) is a fraction. Defaults to DEFAULT_GIVEN, or -1 for
                leave-one-out.
            good_rating: Rating threshold for relevant items, None for all items
            seed: Random seed for reproducible splits

        Raises:
            DataValidationError: If the ratings DataFrame is invalid
            ValueError: If a parameter is out of range
        """
        validate_dataframe_schema(ratings, RATING_COLUMNS)
        if ratings.select([USER_COL, ITEM_COL]).is_duplicated().any():
            raise DataValidationError("ratings contain duplicate (userId, itemId) pairs")
        if method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}, got {method!r}")

        if method == 'leave-one-out':
            if given not in (None, -1):
                raise ValueError(f"leave-one-out withholds exactly one rating, got given={given!r}")
            given = -1
        elif given is None:
            given = DEFAULT_GIVEN
        _validate_given(given)
        given = float(given) if isinstance(given, (float, np.floating)) else int(given)

        if method == 'split' and not 0 < train < 1:
            raise ValueError(f"train must be in (0, 1), got {train}")
        if method != 'cross-validation' and k is not None:
            raise ValueError(f"k only applies to cross-validation, got method={method!r}")
        if method == 'cross-validation':
            k = DEFAULT_K_FOLDS if k is None else k
            if not isinstance(k, int) or k < 2:
                raise ValueError(f"k must be an integer >= 2, got {k!r}")

        self.ratings = ratings.select(RATING_COLUMNS)
        self.method = method
        self.train_fraction = train
        self.k = k
        self.given = given
        self.good_rating = good_rating
        self.seed = seed

        self._data = self.ratings.with_row_index(ROW_COL)
        self._folds: List[Tuple[np.ndarray, np.ndarray]] = []
        self._assign_folds()

    @property
    def n_folds(self) -> int:
        return len(self._folds)

    def _known_count(self, n_ratings: int) -> int:
        if isinstance(self.given, float):
            return int(np.floor(self.given * n_ratings))
        if self.given > 0:
            return min(self.given, n_ratings)
        return max(n_ratings + self.given, 0)

    def _assign_folds(self) -> None:
        rng = np.random.default_rng(self.seed)

        users = self.ratings[USER_COL].unique(maintain_order=True).to_list()
        n_users = len(users)
        order = rng.permutation(n_users)

        if self.method == 'split':
            n_train = int(round(self.train_fraction * n_users))
            if n_train >= n_users:
                raise ValueError(
                    f"train={self.train_fraction} leaves no evaluation users out of {n_users}"
                )
            fold_users = [order[n_train:]]
        elif self.method == 'cross-validation':
            if self.k > n_users:
                raise ValueError(f"k={self.k} exceeds the number of users ({n_users})")
            fold_users = np.array_split(order, self.k)
        else:
            fold_users = [order]

        grouped = self._data.group_by(USER_COL, maintain_order=True).agg(pl.col(ROW_COL))
        user_rows = dict(zip(grouped[USER_COL].to_list(), grouped[ROW_COL].to_list()))

        returned_users = 0
        for positions in fold_users:
            known_rows = []
            unknown_rows = []
            for pos in positions:
                rows = rng.permutation(np.asarray(user_rows[users[pos]]))
                n_known = self._known_count(len(rows))
                if n_known == 0:
                    # Nothing to reveal: the user stays a training user
                    returned_users += 1
                    continue
                known_rows.append(rows[:n_known])
                unknown_rows.append(rows[n_known:])

            self._folds.append((
                np.concatenate(known_rows) if known_rows else np.array([], dtype=np.int64),
                np.concatenate(unknown_rows) if unknown_rows else np.array([], dtype=np.int64),
            ))

        if returned_users:
            logger.info(f"{returned_users:,} users had no ratings to reveal with given={self.given} "
                        f"and were kept for training only")
        logger.info(f"Evaluation scheme '{self.method}': {n_users:,} users, "
                    f"{self.ratings.height:,} ratings, {self.n_folds} fold(s), given={self.given}")

    def get_split(self, fold: int = 0) -> EvaluationSplit:
        """
        Materialize one fold

        Args:
            fold: Fold index in [0, n_folds)

        Returns:
            EvaluationSplit with train, known and unknown DataFrames
        """
        if not 0 <= fold < self.n_folds:
            raise ValueError(f"fold must be in [0, {self.n_folds}), got {fold}")

        known_rows, unknown_rows = self._folds[fold]
        known_mask = np.zeros(self._data.height, dtype=bool)
        known_mask[known_rows] = True
        unknown_mask = np.zeros(self._data.height, dtype=bool)
        unknown_mask[unknown_rows] = True

        split = EvaluationSplit(
            train=self._data.filter(pl.Series(~unknown_mask)).drop(ROW_COL),
            known=self._data.filter(pl.Series(known_mask)).drop(ROW_COL),
            unknown=self._data.filter(pl.Series(unknown_mask)).drop(ROW_COL),
            fold=fold,
            good_rating=self.good_rating,
        )
        logger.debug(f"Fold {fold}: {split.train.height:,} train, {split.known.height:,} known, "
                     f"{split.unknown.height:,} unknown ratings")
        return split

    def splits(self) -> Iterator[EvaluationSplit]:
        for fold in range(self.n_folds):
            yield self.get_split(fold)
