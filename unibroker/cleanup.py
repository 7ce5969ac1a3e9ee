"""Resource cleanup for broker adapters.

Adapters register the transport objects they open (connections, clients,
pub/sub handles) and release them in reverse order on close.
"""

from inspect import isawaitable

import typing as t

from .logger import logger

Closer = t.Callable[[], t.Any]

CLEANUP_METHODS = (
    "aclose",
    "close",
    "disconnect",
    "shutdown",
    "dispose",
    "terminate",
    "quit",
    "release",
)


class CleanupMixin:
    """Simple mixin for resource cleanup."""

    def __init__(self) -> None:
        self._resources: list[tuple[t.Any, Closer | None]] = []

    def register_resource(self, resource: t.Any, closer: Closer | None = None) -> None:
        """Register a resource for cleanup.

        ``closer`` overrides method discovery for objects without a usable
        close method (e.g. clients that are only async context managers).
        """
        if all(resource is not r for r, _ in self._resources):
            self._resources.append((resource, closer))

    def unregister_resource(self, resource: t.Any) -> None:
        self._resources = [(r, c) for r, c in self._resources if r is not resource]

    async def cleanup_resource(self, resource: t.Any, closer: Closer | None = None) -> None:
        """Clean up a single resource using common patterns."""
        if resource is None:
            return

        if closer is None:
            closer = next(
                (
                    getattr(resource, name)
                    for name in CLEANUP_METHODS
                    if callable(getattr(resource, name, None))
                ),
                None,
            )
            if closer is None:
                return

        result = closer()
        if isawaitable(result):
            await result

    async def cleanup(self) -> list[Exception]:
        """Release every registered resource, newest first.

        Returns the errors raised by individual resources; one failing
        resource does not stop the others from being released.
        """
        errors: list[Exception] = []
        while self._resources:
            resource, closer = self._resources.pop()
            try:
                await self.cleanup_resource(resource, closer)
            except Exception as e:
                errors.append(e)
                logger.debug(f"Failed to cleanup {type(resource).__name__}: {e}")

        if errors:
            logger.warning(
                f"Resource cleanup errors: {'; '.join(str(e) for e in errors)}"
            )
        return errors
