from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

_current_component: ContextVar[Optional[str]] = ContextVar("cxs_current_component", default=None)


def current_component() -> Optional[str]:
    return _current_component.get()


@contextmanager
def component_context(name: str) -> Iterator[str]:
    """
    Make ``name`` the current component for the duration of the block. The
    previous component is restored on every exit path, exceptions included.
    """
    token = _current_component.set(name)
    try:
        yield name
    finally:
        _current_component.reset(token)
