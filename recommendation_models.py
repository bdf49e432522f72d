"""
Recommendation Models for Offline Evaluation

Neighbourhood, factorization and baseline recommenders sharing one interface:
fit on a training ratings DataFrame, then predict ratings or produce ranked
Top-N lists for users whose known ratings are excluded.
"""

from typing import Dict, Hashable, List, Optional, Sequence, Set

import numpy as np
import polars as pl
from scipy.sparse import csr_matrix
from sklearn.metrics.pairwise import cosine_similarity

from recsys_common import (
    DEFAULT_ALS_ITERATIONS,
    DEFAULT_ITEM_NEIGHBORS,
    DEFAULT_LEARNING_RATE,
    DEFAULT_N,
    DEFAULT_N_EPOCHS,
    DEFAULT_N_FACTORS,
    DEFAULT_NEIGHBORS,
    DEFAULT_REGULARIZATION,
    ITEM_COL,
    RANDOM_SEED,
    RATING_COL,
    RATING_COLUMNS,
    USER_COL,
    ModelNotTrainedError,
    logger,
    ratings_to_item_sets,
    validate_dataframe_schema,
    validate_n_parameter,
)


class BaseRecommender:
    """
    Common fitting and prediction plumbing

    Subclasses implement `_fit` and `_score_user`, which returns one score per
    catalog item for an internal user index (NaN where no score exists).
    Models whose ranking score is not a rating also override `_predict_user`.
    """

    name = 'BASE'

    def __init__(self):
        self.user_map: Dict[Hashable, int] = {}
        self.item_map: Dict[Hashable, int] = {}
        self.items: List[Hashable] = []
        self.ratings: Optional[csr_matrix] = None
        self.global_mean: Optional[float] = None
        self.rating_range = (None, None)
        self._is_trained = False

    def fit(self, ratings_df: pl.DataFrame) -> 'BaseRecommender':
        """
        Train the model

        Args:
            ratings_df: Training ratings DataFrame

        Returns:
            self for method chaining

        Raises:
            DataValidationError: If DataFrame schema is invalid
        """
        validate_dataframe_schema(ratings_df, RATING_COLUMNS)
        if ratings_df.height == 0:
            raise ValueError(f"Cannot train {self.name} on an empty ratings DataFrame")

        logger.info(f"Training {self.name} model with {ratings_df.height:,} ratings")

        users = ratings_df[USER_COL].unique(maintain_order=True).to_list()
        items = ratings_df[ITEM_COL].unique(maintain_order=True).to_list()
        self.user_map = {u: i for i, u in enumerate(users)}
        self.item_map = {m: i for i, m in enumerate(items)}
        self.items = items

        user_idx = np.array([self.user_map[u] for u in ratings_df[USER_COL].to_list()])
        item_idx = np.array([self.item_map[m] for m in ratings_df[ITEM_COL].to_list()])
        values = ratings_df[RATING_COL].cast(pl.Float64).to_numpy()

        self.ratings = csr_matrix((values, (user_idx, item_idx)), shape=(len(users), len(items)))
        self.global_mean = float(values.mean())
        self.rating_range = (float(values.min()), float(values.max()))

        self._fit(user_idx, item_idx, values)

        self._is_trained = True
        logger.info(f"{self.name} training complete: {len(users):,} users, {len(items):,} items")
        return self

    def _fit(self, user_idx: np.ndarray, item_idx: np.ndarray, values: np.ndarray) -> None:
        raise NotImplementedError

    def _score_user(self, u: int) -> np.ndarray:
        raise NotImplementedError

    def _predict_user(self, u: int) -> np.ndarray:
        return self._score_user(u)

    def _check_trained(self) -> None:
        if not self._is_trained:
            raise ModelNotTrainedError(f"{self.name} model must be trained before making predictions")

    def _ranking_scores(self, user_id: Hashable) -> Optional[np.ndarray]:
        u = self.user_map.get(user_id)
        return None if u is None else self._score_user(u)

    def _rating_predictions(self, user_id: Hashable) -> Optional[np.ndarray]:
        u = self.user_map.get(user_id)
        return None if u is None else self._predict_user(u)

    def predict(self, user_id: Hashable, item_id: Hashable) -> float:
        """
        Predict rating for user-item pair

        Args:
            user_id: User ID
            item_id: Item ID

        Returns:
            Predicted rating, NaN when the pair cannot be predicted

        Raises:
            ModelNotTrainedError: If model hasn't been trained
        """
        self._check_trained()

        if item_id not in self.item_map:
            logger.debug(f"Unknown item {item_id}, no prediction")
            return float('nan')
        predictions = self._rating_predictions(user_id)
        if predictions is None:
            logger.debug(f"Unknown user {user_id}, no prediction")
            return float('nan')
        return float(predictions[self.item_map[item_id]])

    def predict_ratings(self, known_df: pl.DataFrame) -> pl.DataFrame:
        """
        Predict ratings for every catalog item a user has not rated in `known_df`

        Args:
            known_df: Ratings revealed to the model at prediction time

        Returns:
            DataFrame with userId, itemId and rating columns; pairs that cannot
            be predicted are omitted
        """
        self._check_trained()
        validate_dataframe_schema(known_df, [USER_COL, ITEM_COL])

        known_items = ratings_to_item_sets(known_df)
        user_ids, item_ids, predicted = [], [], []

        for user_id in known_df[USER_COL].unique(maintain_order=True).to_list():
            predictions = self._rating_predictions(user_id)
            if predictions is None:
                continue

            mask = ~np.isnan(predictions)
            for item_id in known_items[user_id]:
                i = self.item_map.get(item_id)
                if i is not None:
                    mask[i] = False

            for i in np.flatnonzero(mask):
                user_ids.append(user_id)
                item_ids.append(self.items[i])
                predicted.append(float(predictions[i]))

        return pl.DataFrame(
            {USER_COL: user_ids, ITEM_COL: item_ids, RATING_COL: predicted},
            schema={
                USER_COL: known_df.schema[USER_COL],
                ITEM_COL: known_df.schema[ITEM_COL],
                RATING_COL: pl.Float64,
            }
        )

    def recommend(
        self,
        user_id: Hashable,
        n: int = DEFAULT_N,
        exclude_items: Optional[Set[Hashable]] = None
    ) -> List[Hashable]:
        """
        Generate top-N recommendations for user

        Args:
            user_id: User ID
            n: Number of recommendations
            exclude_items: Set of items to exclude (e.g., already rated)

        Returns:
            Ranked list of at most n item IDs; empty for unknown users

        Raises:
            ModelNotTrainedError: If model hasn't been trained
        """
        self._check_trained()
        validate_n_parameter(n)

        scores = self._ranking_scores(user_id)
        if scores is None:
            logger.debug(f"Unknown user {user_id}, cannot generate recommendations")
            return []

        candidates = ~np.isnan(scores)
        for item_id in exclude_items or set():
            i = self.item_map.get(item_id)
            if i is not None:
                candidates[i] = False

        candidate_idx = np.flatnonzero(candidates)
        order = np.argsort(-scores[candidate_idx], kind='stable')[:n]
        return [self.items[i] for i in candidate_idx[order]]

    def recommend_all(
        self,
        known_df: pl.DataFrame,
        n: int = DEFAULT_N,
        users: Optional[Sequence[Hashable]] = None
    ) -> Dict[Hashable, List[Hashable]]:
        """
        Top-N lists for many users, excluding each user's known items

        Args:
            known_df: Ratings revealed to the model at prediction time
            n: Number of recommendations per user
            users: Users to recommend for, defaults to the users in known_df

        Returns:
            Dict mapping user_id to ranked list of recommended items
        """
        known_items = ratings_to_item_sets(known_df)
        if users is None:
            users = known_df[USER_COL].unique(maintain_order=True).to_list()

        return {
            user_id: self.recommend(user_id, n=n, exclude_items=known_items.get(user_id, set()))
            for user_id in users
        }


class UserBasedCF(BaseRecommender):
    """User-based collaborative filtering over mean-centred cosine similarity"""

    name = 'UBCF'

    def __init__(self, nn: int = DEFAULT_NEIGHBORS):
        """
        Initialize user-based CF

        Args:
            nn: Neighbourhood size
        """
        super().__init__()
        if nn <= 0:
            raise ValueError(f"nn must be positive, got {nn}")
        self.nn = nn
        self.user_means: Optional[np.ndarray] = None
        self.centered: Optional[csr_matrix] = None
        self.similarity: Optional[np.ndarray] = None

    def _fit(self, user_idx, item_idx, values):
        counts = np.bincount(user_idx, minlength=len(self.user_map))
        sums = np.bincount(user_idx, weights=values, minlength=len(self.user_map))
        self.user_means = sums / np.maximum(counts, 1)

        self.centered = csr_matrix(
            (values - self.user_means[user_idx], (user_idx, item_idx)),
            shape=self.ratings.shape
        )
        self.similarity = cosine_similarity(self.centered, dense_output=True)

    def _score_user(self, u):
        sims = self.similarity[u].copy()
        sims[u] = -np.inf

        neighbors = np.argsort(-sims, kind='stable')[:self.nn]
        neighbors = neighbors[sims[neighbors] > 0]
        if len(neighbors) == 0:
            return np.full(len(self.items), np.nan)

        weights = sims[neighbors]
        numerator = self.centered[neighbors].T @ weights
        rated = self.ratings[neighbors].copy()
        rated.data = np.ones_like(rated.data)
        denominator = rated.T @ np.abs(weights)

        scores = np.full(len(self.items), np.nan)
        has_support = denominator > 0
        scores[has_support] = self.user_means[u] + numerator[has_support] / denominator[has_support]
        return scores


class ItemBasedCF(BaseRecommender):
    """Item-based collaborative filtering with a truncated item neighbourhood"""

    name = 'IBCF'

    def __init__(self, k: int = DEFAULT_ITEM_NEIGHBORS):
        """
        Initialize item-based CF

        Args:
            k: Number of most similar items kept per item
        """
        super().__init__()
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")
        self.k = k
        self.similarity: Optional[np.ndarray] = None

    def _fit(self, user_idx, item_idx, values):
        counts = np.bincount(user_idx, minlength=len(self.user_map))
        sums = np.bincount(user_idx, weights=values, minlength=len(self.user_map))
        user_means = sums / np.maximum(counts, 1)

        centered = csr_matrix(
            (values - user_means[user_idx], (user_idx, item_idx)),
            shape=self.ratings.shape
        )
        similarity = cosine_similarity(centered.T, dense_output=True)
        np.fill_diagonal(similarity, 0.0)

        # Keep the k most similar items of every item
        if self.k < similarity.shape[1]:
            cutoff = np.argsort(-similarity, axis=1, kind='stable')[:, self.k:]
            np.put_along_axis(similarity, cutoff, 0.0, axis=1)
        self.similarity = similarity

    def _score_user(self, u):
        row = self.ratings[u]
        rated = row.indices
        scores = np.full(len(self.items), np.nan)
        if len(rated) == 0:
            return scores

        sims = self.similarity[:, rated]
        numerator = sims @ row.data
        denominator = np.abs(sims).sum(axis=1)

        has_support = denominator > 0
        scores[has_support] = numerator[has_support] / denominator[has_support]
        return scores


class SVDRecommender(BaseRecommender):
    """SVD-based Collaborative Filtering with gradient descent"""

    name = 'SVD'

    def __init__(
        self,
        n_factors: int = DEFAULT_N_FACTORS,
        learning_rate: float = DEFAULT_LEARNING_RATE,
        reg: float = DEFAULT_REGULARIZATION,
        n_epochs: int = DEFAULT_N_EPOCHS,
        random_state: int = RANDOM_SEED
    ):
        """
        Initialize SVD recommender

        Args:
            n_factors: Number of latent factors
            learning_rate: Learning rate for gradient descent
            reg: L2 regularization parameter
            n_epochs: Number of training epochs
            random_state: Random seed for reproducibility
        """
        super().__init__()
        if n_factors <= 0:
            raise ValueError(f"n_factors must be positive, got {n_factors}")
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")
        if reg < 0:
            raise ValueError(f"reg must be non-negative, got {reg}")
        if n_epochs <= 0:
            raise ValueError(f"n_epochs must be positive, got {n_epochs}")

        self.n_factors = n_factors
        self.lr = learning_rate
        self.reg = reg
        self.n_epochs = n_epochs
        self.random_state = random_state

        self.user_factors: Optional[np.ndarray] = None
        self.item_factors: Optional[np.ndarray] = None
        self.user_bias: Optional[np.ndarray] = None
        self.item_bias: Optional[np.ndarray] = None

    def _fit(self, user_idx, item_idx, values):
        n_users = len(self.user_map)
        n_items = len(self.item_map)

        rng = np.random.default_rng(self.random_state)
        self.user_factors = rng.normal(0, 0.1, (n_users, self.n_factors))
        self.item_factors = rng.normal(0, 0.1, (n_items, self.n_factors))
        self.user_bias = np.zeros(n_users)
        self.item_bias = np.zeros(n_items)

        for epoch in range(self.n_epochs):
            for idx in rng.permutation(len(values)):
                u = user_idx[idx]
                i = item_idx[idx]

                pred = (self.global_mean + self.user_bias[u] + self.item_bias[i] +
                        np.dot(self.user_factors[u], self.item_factors[i]))
                err = values[idx] - pred

                self.user_bias[u] += self.lr * (err - self.reg * self.user_bias[u])
                self.item_bias[i] += self.lr * (err - self.reg * self.item_bias[i])

                user_vec = self.user_factors[u].copy()
                self.user_factors[u] += self.lr * (err * self.item_factors[i] - self.reg * user_vec)
                self.item_factors[i] += self.lr * (err * user_vec - self.reg * self.item_factors[i])

            if (epoch + 1) % 5 == 0:
                logger.debug(f"Completed epoch {epoch + 1}/{self.n_epochs}")

    def _score_user(self, u):
        return (self.global_mean + self.user_bias[u] + self.item_bias +
                self.item_factors @ self.user_factors[u])


class ALSRecommender(BaseRecommender):
    """
    Alternating Least Squares for Collaborative Filtering

    Alternates between fixing user factors and solving for item factors, and
    vice versa, with a closed-form regularized least-squares solve per row.
    """

    name = 'ALS'

    def __init__(
        self,
        n_factors: int = DEFAULT_N_FACTORS,
        reg: float = DEFAULT_REGULARIZATION,
        n_iterations: int = DEFAULT_ALS_ITERATIONS,
        random_state: int = RANDOM_SEED
    ):
        """
        Initialize ALS recommender

        Args:
            n_factors: Number of latent factors
            reg: L2 regularization strength
            n_iterations: Number of ALS iterations
            random_state: Random seed for reproducibility
        """
        super().__init__()
        if n_factors <= 0:
            raise ValueError(f"n_factors must be positive, got {n_factors}")
        if reg < 0:
            raise ValueError(f"reg must be non-negative, got {reg}")
        if n_iterations <= 0:
            raise ValueError(f"n_iterations must be positive, got {n_iterations}")

        self.n_factors = n_factors
        self.reg = reg
        self.n_iterations = n_iterations
        self.random_state = random_state

        self.user_factors: Optional[np.ndarray] = None
        self.item_factors: Optional[np.ndarray] = None

    @staticmethod
    def _solve(factors: np.ndarray, targets: np.ndarray, reg: float) -> np.ndarray:
        # Solve (F^T F + reg I) x = F^T r
        A = factors.T @ factors + reg * np.eye(factors.shape[1])
        b = factors.T @ targets
        try:
            return np.linalg.solve(A, b)
        except np.linalg.LinAlgError:
            return np.linalg.lstsq(A, b, rcond=None)[0]

    def _fit(self, user_idx, item_idx, values):
        n_users = len(self.user_map)
        n_items = len(self.item_map)

        rng = np.random.default_rng(self.random_state)
        self.user_factors = rng.normal(0, 0.1, (n_users, self.n_factors))
        self.item_factors = rng.normal(0, 0.1, (n_items, self.n_factors))

        by_user = self.ratings
        by_item = self.ratings.T.tocsr()

        for iteration in range(self.n_iterations):
            for u in range(n_users):
                row = by_user[u]
                if row.nnz:
                    self.user_factors[u] = self._solve(self.item_factors[row.indices], row.data, self.reg)

            for i in range(n_items):
                col = by_item[i]
                if col.nnz:
                    self.item_factors[i] = self._solve(self.user_factors[col.indices], col.data, self.reg)

            if (iteration + 1) % 5 == 0:
                logger.debug(f"Completed ALS iteration {iteration + 1}/{self.n_iterations}")

    def _score_user(self, u):
        return self.item_factors @ self.user_factors[u]


class PopularityRecommender(BaseRecommender):
    """Popularity baseline: rank items by rating count, predict the item mean"""

    name = 'POPULAR'

    def __init__(self):
        super().__init__()
        self.item_counts: Optional[np.ndarray] = None
        self.item_means: Optional[np.ndarray] = None

    def _fit(self, user_idx, item_idx, values):
        n_items = len(self.item_map)
        self.item_counts = np.bincount(item_idx, minlength=n_items).astype(float)
        sums = np.bincount(item_idx, weights=values, minlength=n_items)
        self.item_means = sums / np.maximum(self.item_counts, 1)

    def _score_user(self, u):
        return self.item_counts.copy()

    def _predict_user(self, u):
        return self.item_means.copy()


class RandomRecommender(BaseRecommender):
    """Random baseline: uniform random ranking and ratings, reproducible per user"""

    name = 'RANDOM'

    def __init__(self, random_state: int = RANDOM_SEED):
        super().__init__()
        self.random_state = random_state

    def _fit(self, user_idx, item_idx, values):
        pass

    def _score_user(self, u):
        rng = np.random.default_rng([self.random_state, u])
        return rng.random(len(self.items))

    def _predict_user(self, u):
        low, high = self.rating_range
        rng = np.random.default_rng([self.random_state, u, 1])
        return rng.uniform(low, high, len(self.items))


def _min_max(scores: np.ndarray) -> np.ndarray:
    valid = ~np.isnan(scores)
    if not valid.any():
        return scores
    low = scores[valid].min()
    span = scores[valid].max() - low
    if span == 0:
        return np.where(valid, 1.0, np.nan)
    return (scores - low) / span


class HybridRecommender(BaseRecommender):
    """Weighted blend of several recommenders trained on the same data"""

    name = 'HYBRID'

    def __init__(self, recommenders: Sequence[BaseRecommender], weights: Optional[Sequence[float]] = None):
        """
        Initialize hybrid recommender

        Args:
            recommenders: Component models (trained by `fit`)
            weights: Non-negative blend weights, equal weights by default

        Raises:
            ValueError: If fewer than two components or invalid weights are given
        """
        super().__init__()
        if len(recommenders) < 2:
            raise ValueError(f"HYBRID needs at least two recommenders, got {len(recommenders)}")
        if weights is None:
            weights = [1.0] * len(recommenders)
        if len(weights) != len(recommenders):
            raise ValueError(f"Expected {len(recommenders)} weights, got {len(weights)}")

        weights = np.asarray(weights, dtype=float)
        if np.any(weights < 0) or weights.sum() == 0:
            raise ValueError(f"weights must be non-negative with a positive sum, got {weights.tolist()}")

        self.recommenders = list(recommenders)
        self.weights = weights / weights.sum()

    def fit(self, ratings_df: pl.DataFrame) -> 'HybridRecommender':
        for model in self.recommenders:
            model.fit(ratings_df)
        return super().fit(ratings_df)

    def _fit(self, user_idx, item_idx, values):
        pass

    def _blend(self, user_id: Hashable, rating: bool) -> Optional[np.ndarray]:
        blended = np.zeros(len(self.items))
        weight_sum = np.zeros(len(self.items))

        for model, weight in zip(self.recommenders, self.weights):
            if rating:
                component = model._rating_predictions(user_id)
            else:
                component = model._ranking_scores(user_id)
            if component is None:
                continue
            if not rating:
                component = _min_max(component)

            # Component item order may differ from the hybrid's
            aligned = component[[model.item_map[item] for item in self.items]]
            available = ~np.isnan(aligned)
            blended[available] += weight * aligned[available]
            weight_sum[available] += weight

        if not weight_sum.any():
            return None if user_id not in self.user_map else np.full(len(self.items), np.nan)

        scores = np.full(len(self.items), np.nan)
        supported = weight_sum > 0
        scores[supported] = blended[supported] / weight_sum[supported]
        return scores

    def _ranking_scores(self, user_id):
        return self._blend(user_id, rating=False)

    def _rating_predictions(self, user_id):
        return self._blend(user_id, rating=True)


RECOMMENDERS = {
    'UBCF': UserBasedCF,
    'IBCF': ItemBasedCF,
    'SVD': SVDRecommender,
    'ALS': ALSRecommender,
    'POPULAR': PopularityRecommender,
    'RANDOM': RandomRecommender,
    'HYBRID': HybridRecommender,
}


def create_recommender(method: str, **params) -> BaseRecommender:
    """
    Build an unfitted recommender by name

    Args:
        method: One of UBCF, IBCF, SVD, ALS, POPULAR, RANDOM, HYBRID
        **params: Algorithm-specific parameters (e.g. nn, k, n_factors, weights)

    Returns:
        Unfitted recommender instance
    """
    try:
        model_cls = RECOMMENDERS[method.upper()]
    except KeyError:
        raise ValueError(f"Unknown method {method!r}, expected one of {sorted(RECOMMENDERS)}") from None
    return model_cls(**params)
