from formserve.errors import SentinelHttpError, WrappedError, wrap_error


def test_new_sentinel_http_error():
    actual = SentinelHttpError(500, "foo")
    assert actual.status == 500
    assert actual.message == "foo"
    assert actual == SentinelHttpError(500, "foo")


def test_sentinel_http_error_str():
    assert str(SentinelHttpError(0, "foo")) == "foo"


def test_sentinel_http_error_http_error():
    assert SentinelHttpError(500, "foo").http_error() == (500, "foo")


def test_wrapped_error_matches():
    sentinel = SentinelHttpError(0, "")
    err = WrappedError(ValueError("foo"), sentinel)
    assert err.matches(sentinel) is True
    assert err.matches(SentinelHttpError(400, "bar")) is False
    assert err.matches(ValueError("foo")) is False


def test_wrapped_error_http_error():
    expected = SentinelHttpError(500, "foo").http_error()
    actual = WrappedError(ValueError("foo"), SentinelHttpError(500, "foo")).http_error()
    assert actual == expected


def test_wrap_error():
    err_foo = ValueError("foo")
    actual = wrap_error(err_foo, SentinelHttpError(500, "foo"))
    assert isinstance(actual, WrappedError)
    assert actual.err is err_foo
    assert actual.sentinel == SentinelHttpError(500, "foo")
    assert str(actual) == "foo"
    assert actual.__cause__ is err_foo