from unittest.mock import MagicMock, patch

import psycopg2
import pytest
from sqlalchemy import exc as sa_exc

from db_purger.utils import call_with_retry, format_duration, format_error, is_transient


class TestFormatDuration:

    @pytest.mark.parametrize("seconds,expected", [
        (2.5, "2.50s"),
        (90, "1m 30.0s"),
        (120.2, "2m"),
        (3600, "1h"),
        (3900, "1h 5m"),
        (3930, "1h 5m 30.0s"),
    ])
    def test_units(self, seconds, expected) -> None:
        assert format_duration(seconds) == expected


class TestRetry:

    def test_transient_then_success(self) -> None:
        fn = MagicMock(side_effect=[psycopg2.OperationalError("gone"), 42])
        with patch("db_purger.utils.time.sleep") as sleep:
            assert call_with_retry(fn, "op", max_retries=3, retry_delay=0.5) == 42
        sleep.assert_called_once_with(0.5)

    def test_non_transient_not_retried(self) -> None:
        fn = MagicMock(side_effect=psycopg2.IntegrityError("fk violation"))
        with pytest.raises(psycopg2.IntegrityError):
            call_with_retry(fn, "op", max_retries=3, retry_delay=0)
        assert fn.call_count == 1

    def test_backoff_doubles(self) -> None:
        fn = MagicMock(side_effect=psycopg2.InterfaceError("closed"))
        with patch("db_purger.utils.time.sleep") as sleep, pytest.raises(psycopg2.InterfaceError):
            call_with_retry(fn, "op", max_retries=3, retry_delay=1.0)
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0]
        assert fn.call_count == 4


def test_sqlalchemy_wrapped_errors() -> None:
    wrapped = sa_exc.OperationalError("connect", {}, psycopg2.OperationalError("timeout expired"))
    assert is_transient(wrapped)
    assert "timeout expired" in format_error(wrapped)
