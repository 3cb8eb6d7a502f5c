"""
Async support for Converge.

A reconciliation pass is a blocking sequence of remote calls and polls.
:func:`async_wrap` runs such a pass in a worker thread via
:func:`asyncio.to_thread`, so callers can converge many distinct instances
concurrently from one event loop::

    results = await converge_all(
        reconciler.aupdate(id_a, spec_a),
        reconciler.aupdate(id_b, spec_b),
    )

Passes for the *same* instance must still be serialized by the caller.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

T = TypeVar("T")


def async_wrap(
    fn: Callable[..., T],
) -> Callable[..., Coroutine[Any, Any, T]]:
    """Return an async version of *fn* that runs it in a thread.

    The wrapper preserves the original function's signature and docstring.

    Args:
        fn: A synchronous callable to wrap.

    Returns:
        An async callable with the same parameters and return type.
    """

    @functools.wraps(fn)
    async def _wrapper(*args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    return _wrapper


class AsyncMixin:
    """Mixin that generates ``a<method>`` variants for selected methods.

    Subclasses list the blocking workflow methods in ``__async_methods__``;
    each gets an awaitable twin created once at class definition time.

    Example::

        class Reconciler(AsyncMixin):
            __async_methods__ = ("create",)

            def create(self, spec): ...
            # => await self.acreate(spec) is now available
    """

    __async_methods__: tuple[str, ...] = ()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for name in cls.__async_methods__:
            attr = getattr(cls, name, None)
            if attr is None or not callable(attr):
                raise TypeError(f"{cls.__name__}.{name} is not a method")
            async_name = f"a{name}"
            if async_name not in vars(cls):
                setattr(cls, async_name, async_wrap(attr))


async def converge_all(*passes: Awaitable[T]) -> list[T | BaseException]:
    """Await independent reconciliation passes together.

    A failing pass does not cancel the others; its exception is returned in
    its slot instead of a result.
    """
    return list(await asyncio.gather(*passes, return_exceptions=True))


__all__ = ["async_wrap", "AsyncMixin", "converge_all"]
