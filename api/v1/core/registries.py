from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        return name in self._implementations

    def unregister(self, name: str) -> None:
        """Remove an implementation; used by tests and hot reloads."""
        if self._frozen:
            raise RuntimeError(f"{self.name} registry is frozen")
        self._implementations.pop(name, None)

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - worker-side handlers keyed by job type
class JobHandler(Protocol):
    """Protocol for job handlers run by worker processes.

    Collaborators (platform sync, AI analysis, SEO submission...) implement
    this and register under their job type value.
    """

    async def handle(
        self,
        context: Any,  # JobContext
        params: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Execute a claimed job.

        Args:
            context: JobContext for progress reports and job log entries
            params: Job parameters exactly as submitted

        Returns:
            Optional result document stored on the completed job
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers."""

    def __init__(self):
        super().__init__("Job")


# Webhook processor registry - billing event side effects
class WebhookProcessor(Protocol):
    """Protocol for processors applying an external billing event."""

    async def process(
        self, session: Any, event_type: str, payload: dict[str, Any]
    ) -> None:
        """Apply the event. Raising marks the attempt as failed."""
        ...


class WebhookProcessorRegistry(Registry[WebhookProcessor]):
    """Registry for webhook processors keyed by exact event type."""

    def __init__(self):
        super().__init__("WebhookProcessor")


# Global registry instances (singletons)
job_registry = JobRegistry()
webhook_processor_registry = WebhookProcessorRegistry()
