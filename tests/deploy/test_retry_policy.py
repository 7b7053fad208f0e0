import random

import pytest

from dcforge.deploy.errors import FatalActionError, TransientActionError
from dcforge.deploy.retry import NO_RETRY, RetryPolicy


def test_exponential_backoff_without_jitter():
    p = RetryPolicy(max_attempts=5, backoff_base=2.0, backoff_multiplier=3.0, backoff_cap=50.0, jitter=0)
    assert [p.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 6.0, 18.0, 50.0]


def test_jitter_stays_within_bounds():
    p = RetryPolicy(backoff_base=10.0, jitter=0.2)
    rng = random.Random(7)
    for _ in range(50):
        assert 8.0 <= p.delay_for(1, rng) <= 12.0


def test_attempt_budget():
    p = RetryPolicy(max_attempts=3)
    assert p.allows_another(1)
    assert p.allows_another(2)
    assert not p.allows_another(3)
    assert not NO_RETRY.allows_another(1)


def test_classification():
    p = RetryPolicy()
    assert p.classify_exception(TransientActionError("boot")) == "transient"
    assert p.classify_exception(FatalActionError("bad password")) == "fatal"
    assert p.classify_exception(ConnectionRefusedError()) == "transient"
    assert p.classify_exception(KeyError("x")) == "fatal"
    assert p.classify_exception(TimeoutError()) == "transient"
    assert RetryPolicy(timeout_is_fatal=True).classify_exception(TimeoutError()) == "fatal"


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"backoff_base": -1}, {"jitter": 1.5}])
def test_invalid_policies(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
