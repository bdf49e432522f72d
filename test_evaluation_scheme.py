"""
Unit tests for evaluation schemes

Run with: pytest test_evaluation_scheme.py -v
"""

import warnings

import numpy as np
import polars as pl
import pytest
from polars.testing import assert_frame_equal

from evaluation_scheme import EvaluationScheme
from recsys_common import DataValidationError


@pytest.fixture
def ratings():
    """Ten users with six ratings each over a twelve-item catalog"""
    rows = [
        (user_id, (user_id + j) % 12, float(1 + (user_id * j) % 5))
        for user_id in range(1, 11)
        for j in range(6)
    ]
    users, items, values = zip(*rows)
    return pl.DataFrame({'userId': list(users), 'itemId': list(items), 'rating': list(values)})


def _pairs(df):
    return set(zip(df['userId'].to_list(), df['itemId'].to_list()))


class TestSplitScheme:
    """Test the random split protocol"""

    def test_split_sizes(self, ratings):
        """Test known and unknown sizes for a fixed given"""
        scheme = EvaluationScheme(ratings, method='split', train=0.8, given=2, seed=1)
        assert scheme.n_folds == 1

        split = scheme.get_split()
        assert len(split.evaluation_users()) == 2
        assert all(len(items) == 2 for items in split.known_items().values())
        assert all(len(items) == 4 for items in split.unknown_items().values())

    def test_known_unknown_partition(self, ratings):
        """Test known and unknown are disjoint and cover the evaluation users' ratings"""
        split = EvaluationScheme(ratings, given=3, seed=5).get_split()
        known, unknown = _pairs(split.known), _pairs(split.unknown)

        assert not known & unknown
        evaluation_users = set(split.evaluation_users())
        user_pairs = {pair for pair in _pairs(ratings) if pair[0] in evaluation_users}
        assert known | unknown == user_pairs

    def test_train_excludes_unknown(self, ratings):
        """Test withheld ratings never reach training data"""
        split = EvaluationScheme(ratings, given=3, seed=5).get_split()
        train = _pairs(split.train)

        assert not train & _pairs(split.unknown)
        assert _pairs(split.known) <= train
        assert train | _pairs(split.unknown) == _pairs(ratings)

    def test_unknown_users_present_in_train(self, ratings):
        """Test every user with withheld ratings also has training ratings"""
        split = EvaluationScheme(ratings, given=1, seed=9).get_split()
        train_users = set(split.train['userId'].to_list())
        assert set(split.unknown['userId'].to_list()) <= train_users

    def test_reproducible_with_seed(self, ratings):
        """Test identical arguments reproduce identical splits"""
        split1 = EvaluationScheme(ratings, given=2, seed=42).get_split()
        split2 = EvaluationScheme(ratings, given=2, seed=42).get_split()
        assert _pairs(split1.known) == _pairs(split2.known)
        assert _pairs(split1.unknown) == _pairs(split2.unknown)

    def test_all_but_m(self, ratings):
        """Test negative given withholds exactly m ratings"""
        split = EvaluationScheme(ratings, given=-2, seed=3).get_split()
        assert all(len(items) == 4 for items in split.known_items().values())
        assert all(len(items) == 2 for items in split.unknown_items().values())

    def test_fractional_given(self, ratings):
        """Test a fraction reveals a share of each user's ratings"""
        split = EvaluationScheme(ratings, given=0.5, seed=3).get_split()
        assert all(len(items) == 3 for items in split.known_items().values())

    def test_numpy_given_values(self, ratings):
        """Test numpy scalars behave like the matching Python numbers"""
        fraction = EvaluationScheme(ratings, given=np.float32(0.5), seed=3).get_split()
        count = EvaluationScheme(ratings, given=np.int64(2), seed=3).get_split()

        assert_frame_equal(fraction.known, EvaluationScheme(ratings, given=0.5, seed=3).get_split().known)
        assert all(len(items) == 2 for items in count.known_items().values())

    def test_get_split_emits_no_deprecation_warnings(self, ratings):
        """Test fold materialisation avoids deprecated polars calls"""
        scheme = EvaluationScheme(ratings, method='cross-validation', k=2, given=2, seed=3)
        with warnings.catch_warnings():
            warnings.simplefilter('error', DeprecationWarning)
            for split in scheme.splits():
                assert split.train.height + split.unknown.height == ratings.height

    def test_given_exceeding_ratings_leaves_unknown_empty(self, ratings):
        """Test users with too few ratings yield an empty unknown set"""
        split = EvaluationScheme(ratings, given=10, seed=3).get_split()
        assert split.unknown.height == 0
        assert split.known.height == 2 * 6
        relevant = split.relevant_items()
        assert len(relevant) == 2
        assert all(items == set() for items in relevant.values())


class TestCrossValidation:
    """Test the k-fold protocol"""

    def test_folds_cover_all_users_once(self, ratings):
        """Test every user is an evaluation user in exactly one fold"""
        scheme = EvaluationScheme(ratings, method='cross-validation', k=5, given=2, seed=11)
        assert scheme.n_folds == 5

        seen = []
        for split in scheme.splits():
            seen.extend(split.evaluation_users())
        assert sorted(seen) == list(range(1, 11))

    def test_fold_indices(self, ratings):
        """Test splits carry their fold index"""
        scheme = EvaluationScheme(ratings, method='cross-validation', k=3, seed=11)
        assert [split.fold for split in scheme.splits()] == [0, 1, 2]

    def test_too_many_folds(self, ratings):
        """Test k larger than the number of users is rejected"""
        with pytest.raises(ValueError, match="exceeds the number of users"):
            EvaluationScheme(ratings, method='cross-validation', k=11)


class TestLeaveOneOut:
    """Test the leave-one-out protocol"""

    def test_one_rating_withheld_per_user(self, ratings):
        """Test every user withholds exactly one rating"""
        split = EvaluationScheme(ratings, method='leave-one-out', seed=2).get_split()
        unknown = split.unknown_items()

        assert len(unknown) == 10
        assert all(len(items) == 1 for items in unknown.values())
        assert all(len(items) == 5 for items in split.known_items().values())

    def test_single_rating_user_stays_in_training(self, ratings):
        """Test users with nothing to reveal are kept for training only"""
        extra = pl.DataFrame({'userId': [99], 'itemId': [0], 'rating': [4.0]})
        split = EvaluationScheme(pl.concat([ratings, extra]), method='leave-one-out').get_split()

        assert 99 not in split.evaluation_users()
        assert (99, 0) in _pairs(split.train)

    def test_conflicting_given(self, ratings):
        """Test leave-one-out rejects other given values"""
        with pytest.raises(ValueError, match="leave-one-out"):
            EvaluationScheme(ratings, method='leave-one-out', given=3)


class TestRelevantItems:
    """Test relevance threshold"""

    def test_good_rating_filters_relevant(self, ratings):
        """Test only withheld ratings above the threshold are relevant"""
        split = EvaluationScheme(ratings, given=2, good_rating=4.0, seed=4).get_split()
        unknown = split.unknown
        expected = set(zip(
            unknown.filter(pl.col('rating') >= 4.0)['userId'].to_list(),
            unknown.filter(pl.col('rating') >= 4.0)['itemId'].to_list()
        ))

        relevant = split.relevant_items()
        actual = {(user_id, item) for user_id, items in relevant.items() for item in items}
        assert actual == expected
        assert set(relevant) == set(split.evaluation_users())

    def test_no_threshold_counts_all_unknown(self, ratings):
        """Test every withheld item is relevant without a threshold"""
        split = EvaluationScheme(ratings, given=2, seed=4).get_split()
        assert split.relevant_items() == split.unknown_items()

    def test_actual_ratings(self, ratings):
        """Test withheld ratings are keyed by (user, item)"""
        split = EvaluationScheme(ratings, given=2, seed=4).get_split()
        actual = split.actual_ratings()
        assert set(actual) == _pairs(split.unknown)


class TestValidation:
    """Test parameter validation"""

    def test_unknown_method(self, ratings):
        with pytest.raises(ValueError, match="method must be one of"):
            EvaluationScheme(ratings, method='bootstrap')

    def test_invalid_train_fraction(self, ratings):
        with pytest.raises(ValueError, match="train must be in"):
            EvaluationScheme(ratings, train=1.0)

    def test_k_only_for_cross_validation(self, ratings):
        with pytest.raises(ValueError, match="k only applies"):
            EvaluationScheme(ratings, method='split', k=3)

    def test_invalid_given(self, ratings):
        with pytest.raises(ValueError, match="given must be"):
            EvaluationScheme(ratings, given=0)
        with pytest.raises(ValueError, match="given must be"):
            EvaluationScheme(ratings, given=1.5)
        with pytest.raises(ValueError, match="given must be"):
            EvaluationScheme(ratings, given=True)

    def test_missing_columns(self):
        with pytest.raises(DataValidationError, match="missing required columns"):
            EvaluationScheme(pl.DataFrame({'userId': [1], 'itemId': [2]}))

    def test_duplicate_pairs(self, ratings):
        with pytest.raises(DataValidationError, match="duplicate"):
            EvaluationScheme(pl.concat([ratings, ratings.head(1)]))

    def test_fold_out_of_range(self, ratings):
        scheme = EvaluationScheme(ratings)
        with pytest.raises(ValueError, match="fold must be in"):
            scheme.get_split(1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
