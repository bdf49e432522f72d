"""
Shared configuration, exceptions and input validation for offline evaluation
"""

import logging
from typing import Dict, Hashable, List, Set

import numpy as np
import polars as pl

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Column names of the long-format rating matrix
USER_COL = 'userId'
ITEM_COL = 'itemId'
RATING_COL = 'rating'
RATING_COLUMNS = [USER_COL, ITEM_COL, RATING_COL]

# Constants
DEFAULT_N = 10
DEFAULT_NEIGHBORS = 25
DEFAULT_ITEM_NEIGHBORS = 30
DEFAULT_N_FACTORS = 10
DEFAULT_LEARNING_RATE = 0.01
DEFAULT_REGULARIZATION = 0.02
DEFAULT_N_EPOCHS = 20
DEFAULT_ALS_ITERATIONS = 15
DEFAULT_TRAIN_FRACTION = 0.8
DEFAULT_K_FOLDS = 4
DEFAULT_GIVEN = 10
SERENDIPITY_PERCENTILE = 90
MIN_N = 1
MAX_N = 100
RANDOM_SEED = 42


class DataValidationError(Exception):
    """Raised when input data fails validation"""
    pass


class ItemAlignmentError(DataValidationError):
    """Raised when item ids do not belong to the catalog they are evaluated against"""
    pass


class ModelNotTrainedError(Exception):
    """Raised when attempting to use an untrained model"""
    pass


def validate_dataframe_schema(df: pl.DataFrame, required_columns: List[str]) -> None:
    """
    Validate that DataFrame has required columns

    Args:
        df: Polars DataFrame to validate
        required_columns: List of required column names

    Raises:
        DataValidationError: If validation fails
    """
    if not isinstance(df, pl.DataFrame):
        raise DataValidationError(f"Expected a polars DataFrame, got {type(df).__name__}")
    missing_cols = set(required_columns) - set(df.columns)
    if missing_cols:
        raise DataValidationError(
            f"DataFrame missing required columns: {missing_cols}. "
            f"Found columns: {df.columns}"
        )
    logger.debug(f"DataFrame schema validation passed for columns: {required_columns}")


def validate_n_parameter(n: int) -> None:
    """
    Validate n parameter for top-N recommendations

    Args:
        n: Length of the recommendation list

    Raises:
        ValueError: If n is out of valid range
    """
    # bool is an int subclass, but never a list length
    if not isinstance(n, int) or isinstance(n, bool):
        raise ValueError(f"n must be an integer, got {type(n)}")
    if n < MIN_N or n > MAX_N:
        raise ValueError(f"n must be in range [{MIN_N}, {MAX_N}], got {n}")


def validate_list_length(n: int) -> None:
    """
    Validate the list length n passed to a metric

    Unlike validate_n_parameter there is no upper bound, so a list may cover
    the whole catalog.

    Raises:
        ValueError: If n is not a positive integer
    """
    if not isinstance(n, (int, np.integer)) or isinstance(n, bool):
        raise ValueError(f"n must be an integer, got {type(n)}")
    if n < MIN_N:
        raise ValueError(f"n must be at least {MIN_N}, got {n}")


def ratings_to_item_sets(ratings: pl.DataFrame) -> Dict[Hashable, Set[Hashable]]:
    """
    Group a ratings DataFrame into a mapping of user id to the set of rated items

    Args:
        ratings: DataFrame with userId and itemId columns

    Returns:
        Dict mapping user_id to set of item ids
    """
    validate_dataframe_schema(ratings, [USER_COL, ITEM_COL])
    if ratings.height == 0:
        return {}

    grouped = ratings.group_by(USER_COL).agg(pl.col(ITEM_COL))
    return {
        user_id: set(items)
        for user_id, items in zip(grouped[USER_COL].to_list(), grouped[ITEM_COL].to_list())
    }
