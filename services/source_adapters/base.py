"""Source adapter contract shared by every external service."""

import logging
from functools import wraps
from typing import Callable, List, Optional

import httpx

from shared.errors import SourceError
from services.source_adapters.backoff import with_backoff

logger = logging.getLogger(__name__)


def translate_errors(operation: str):
    """
    Decorator turning every transport, HTTP and payload failure into SourceError.

    The coordinator treats all adapter failures uniformly, so nothing but
    SourceError may escape an adapter operation.

    Args:
        operation: Human readable name of the operation, used in the message
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except SourceError:
                raise
            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                hint = ""
                if status_code == 401:
                    hint = " (authentication failed, check the token)"
                elif status_code == 404:
                    hint = " (not found or token lacks access)"
                raise SourceError(
                    self.name, f"{operation} failed: HTTP {status_code}{hint}", status_code=status_code
                ) from e
            except httpx.HTTPError as e:
                raise SourceError(self.name, f"{operation} failed: {e!r}") from e
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise SourceError(self.name, f"{operation} returned an unexpected payload: {e!r}") from e
        return wrapper
    return decorator


class SourceAdapter:
    """
    Normalizes one external service into record shapes.

    Adapters are stateless per call apart from a cached identity (the
    authenticated user); they enforce their own request timeout and are safe to
    retry. Sources without a notification or completion concept keep the no-op
    defaults below and advertise it through the capability flags.
    """

    name: str = ""
    snapshot_kind: Optional[str] = None
    notification_kind: Optional[str] = None
    supports_notifications: bool = False
    supports_completion: bool = False

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch_snapshot(self) -> List:
        """Full set of snapshot records. Zero results is a valid snapshot."""
        return []

    async def fetch_notifications(self) -> List:
        """Current notification records; empty for sources without notifications."""
        return []

    async def mark_read(self, notification_id: str) -> bool:
        """
        Mark one notification read on the remote.

        Without a remote notification concept there is no remote state to
        clear, so the call trivially succeeds.
        """
        return True

    async def mark_all_read(self) -> bool:
        """
        Mark every notification read on the remote as one atomic operation.

        Implementations must only report success once the remote state is
        actually cleared; there is no per-item confirmation.
        """
        return True

    async def complete_task(self, task_id: str) -> bool:
        return False

    @with_backoff(max_retries=3, initial_delay=1.0)
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self.client.is_closed:
            raise SourceError(self.name, "adapter has been shut down, retry the request")
        response = await self.client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _get_json(self, url: str, **kwargs):
        response = await self._request("GET", url, **kwargs)
        return response.json()

    async def aclose(self):
        await self.client.aclose()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} source={self.name}>"
