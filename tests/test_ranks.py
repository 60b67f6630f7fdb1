import pytest

from lib.ranks import RANKS, next_rank_for, rank_by_key, rank_for


@pytest.mark.parametrize('count, key', [
    (0, 'murabito'),
    (2, 'murabito'),
    (3, 'ashigaru'),
    (5, 'ashigaru'),
    (6, 'ronin'),
    (10, 'samurai'),
    (15, 'daimyo'),
    (19, 'daimyo'),
    (20, 'shogun'),
    (30, 'tenno'),
    (500, 'tenno'),
])
def test_rank_for_thresholds(count, key):
    assert rank_for(count).key == key


def test_thresholds_are_increasing():
    thresholds = [rank.min_sakes for rank in RANKS]
    assert thresholds == sorted(thresholds)
    assert thresholds[0] == 0


def test_negative_count_is_rejected():
    with pytest.raises(ValueError):
        rank_for(-1)


def test_next_rank_progress():
    following = next_rank_for(4)
    assert following.rank.key == 'ronin'
    assert following.remaining == 2
    assert following.progress == pytest.approx(1 / 3)


def test_next_rank_at_threshold_starts_at_zero():
    following = next_rank_for(10)
    assert following.rank.key == 'daimyo'
    assert following.progress == 0
    assert following.remaining == 5


def test_no_next_rank_at_top_tier():
    assert next_rank_for(30) is None
    assert next_rank_for(99) is None


def test_rank_by_key_falls_back_to_lowest_tier():
    assert rank_by_key('samurai').kanji == '侍'
    assert rank_by_key('unknown').key == 'murabito'
    assert rank_by_key(None).key == 'murabito'


def test_serialized_shape():
    data = next_rank_for(0).to_dict()
    assert data['next_rank']['key'] == 'ashigaru'
    assert set(data) == {'next_rank', 'progress', 'remaining'}
    assert set(rank_for(0).to_dict()) == {'key', 'kanji', 'romaji', 'english', 'min_sakes', 'color'}
