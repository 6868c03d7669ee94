from duostack.utils.retry import backoff_delay


def test_exponential_and_capped():
    assert [backoff_delay(n, base=2.0) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]
    assert backoff_delay(10, base=2.0, cap=30.0) == 30.0
    assert backoff_delay(3, base=5.0, factor=1.0) == 5.0
