import httpx
import pytest

from papercheck.errors import DownloadFailed, DownloadTimeout
from papercheck.utils.file_utils import download_bytes

from conftest import run

URL = "http://files.test/api/files/sheet.pdf"


def _flaky_transport(*failures):
    """Replays failures (an exception class or a status code) in order, then serves the file."""
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) <= len(failures):
            failure = failures[len(calls) - 1]
            if isinstance(failure, int):
                return httpx.Response(failure)
            raise failure("upstream blip", request=request)
        return httpx.Response(200, content=b"%PDF-1.4 sheet")

    return httpx.MockTransport(handler), calls


def test_download_recovers_from_transient_failures():
    transport, calls = _flaky_transport(httpx.ConnectTimeout, 503)

    data = run(download_bytes(URL, retry_delay=0, transport=transport))

    assert data == b"%PDF-1.4 sheet"
    assert len(calls) == 3
    assert calls[0].headers["cache-control"].startswith("no-cache")


def test_download_gives_up_after_three_attempts():
    transport, calls = _flaky_transport(httpx.ReadTimeout, httpx.ReadTimeout, httpx.ReadTimeout)

    with pytest.raises(DownloadTimeout):
        run(download_bytes(URL, retry_delay=0, transport=transport))
    assert len(calls) == 3


def test_connection_errors_end_as_download_failed():
    transport, calls = _flaky_transport(httpx.ConnectError, httpx.ConnectError)

    with pytest.raises(DownloadFailed) as excinfo:
        run(download_bytes(URL, max_attempts=2, retry_delay=0, transport=transport))
    assert not isinstance(excinfo.value, DownloadTimeout)
    assert len(calls) == 2


def test_missing_file_is_not_retried():
    transport, calls = _flaky_transport(404)

    with pytest.raises(DownloadFailed, match="HTTP 404"):
        run(download_bytes(URL, retry_delay=0, transport=transport))
    assert len(calls) == 1
