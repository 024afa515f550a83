"""HTTP client abstraction.

This module provides:
- HttpClient: Protocol for the two HTTP operations cutover needs (liveness
  probes and artifact downloads), injectable for tests
- RealHttpClient: Real implementation using urllib
- MockHttpClient: Mock implementation for testing
"""

from __future__ import annotations

import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass
from http.client import HTTPResponse
from pathlib import Path
from typing import Protocol, runtime_checkable

from cutover import __version__
from cutover.core.result import Err, Ok, Result

__all__ = [
    "HttpClient",
    "HttpError",
    "MockHttpClient",
    "RealHttpClient",
]


@dataclass(frozen=True, slots=True)
class HttpError:
    """HTTP error details.

    Attributes:
        url: The URL that failed
        status: HTTP status code (0 for network errors)
        message: Human-readable error message
    """

    url: str
    status: int
    message: str

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status}: {self.message} ({self.url})"
        return f"{self.message} ({self.url})"


@runtime_checkable
class HttpClient(Protocol):
    def get_status(self, url: str, *, timeout: float) -> Result[int, HttpError]:
        """GET ``url`` and return its 2xx/3xx status code.

        4xx/5xx answers, network errors and timeouts are Err.
        """
        ...

    def download(self, url: str, dest: Path, *, timeout: float) -> Result[Path, HttpError]:
        """Download ``url`` to ``dest``."""
        ...


class RealHttpClient:
    """HTTP client using urllib with system certificates."""

    def __init__(self, user_agent: str = f"cutover/{__version__}") -> None:
        self.user_agent = user_agent
        self._ssl_context = ssl.create_default_context()

    def _open(self, url: str, timeout: float) -> HTTPResponse:
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        return urllib.request.urlopen(req, timeout=timeout, context=self._ssl_context)

    def get_status(self, url: str, *, timeout: float) -> Result[int, HttpError]:
        try:
            with self._open(url, timeout) as response:
                response.read()
                return Ok(int(response.status))
        except urllib.error.HTTPError as e:
            return Err(HttpError(url=url, status=e.code, message=str(e.reason)))
        except urllib.error.URLError as e:
            return Err(HttpError(url=url, status=0, message=str(e.reason)))
        except TimeoutError:
            return Err(HttpError(url=url, status=0, message="Request timed out"))
        except (ValueError, OSError) as e:
            return Err(HttpError(url=url, status=0, message=str(e)))

    def download(self, url: str, dest: Path, *, timeout: float) -> Result[Path, HttpError]:
        try:
            with self._open(url, timeout) as response:
                dest.parent.mkdir(parents=True, exist_ok=True)
                with open(dest, "wb") as f:
                    while True:
                        chunk = response.read(64 * 1024)
                        if not chunk:
                            break
                        f.write(chunk)
            return Ok(dest)
        except urllib.error.HTTPError as e:
            return Err(HttpError(url=url, status=e.code, message=str(e.reason)))
        except urllib.error.URLError as e:
            return Err(HttpError(url=url, status=0, message=str(e.reason)))
        except TimeoutError:
            return Err(HttpError(url=url, status=0, message="Download timed out"))
        except (ValueError, OSError) as e:
            return Err(HttpError(url=url, status=0, message=str(e)))


class MockHttpClient:
    """Mock HTTP client for testing.

    ``queue_status`` scripts successive probe answers for a URL; the last one
    repeats once the queue is exhausted.

    Usage:
        client = MockHttpClient()
        client.queue_status("http://app/healthz", 503, 200, 200)
    """

    def __init__(self) -> None:
        self._statuses: dict[str, list[int | HttpError]] = {}
        self._downloads: dict[str, bytes | HttpError] = {}
        self.calls: list[tuple[str, str]] = []

    def queue_status(self, url: str, *answers: int | HttpError) -> None:
        self._statuses.setdefault(url, []).extend(answers)

    def set_download(self, url: str, response: bytes | HttpError) -> None:
        self._downloads[url] = response

    def get_status(self, url: str, *, timeout: float) -> Result[int, HttpError]:
        self.calls.append(("get_status", url))
        queue = self._statuses.get(url)
        if not queue:
            return Err(HttpError(url=url, status=0, message="Connection refused (mock)"))
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, HttpError):
            return Err(answer)
        if answer >= 400:
            return Err(HttpError(url=url, status=answer, message="mock status"))
        return Ok(answer)

    def download(self, url: str, dest: Path, *, timeout: float) -> Result[Path, HttpError]:
        self.calls.append(("download", url))
        response = self._downloads.get(url)
        if response is None:
            return Err(HttpError(url=url, status=404, message="Not found (mock)"))
        if isinstance(response, HttpError):
            return Err(response)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(response)
        return Ok(dest)
