from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current job/request ID from context."""
    return request_id_context.get()


@contextmanager
def request_id_scope(request_id: str) -> Iterator[None]:
    """Bind a request ID for the duration of a task run, then restore the previous one."""
    token = request_id_context.set(request_id)
    try:
        yield
    finally:
        request_id_context.reset(token)
