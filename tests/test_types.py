import pytest

from courier.networking.errors import TransportError
from courier.networking.types import Err, Ok


def test_ok_exposes_value():
    result = Ok(b"body", meta={"status": 200})

    assert result.ok
    assert result.error is None
    assert result.unwrap() == b"body"
    assert result.meta["status"] == 200


def test_err_exposes_error_and_raises_on_unwrap():
    error = TransportError("refused")
    result = Err(error)

    assert not result.ok
    assert result.value is None
    assert result.error is error
    assert dict(result.meta) == {}
    with pytest.raises(TransportError):
        result.unwrap()
