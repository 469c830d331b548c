import builtins
from dataclasses import dataclass
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

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def items(self) -> builtins.list[tuple[str, T]]:
        """List registered (name, implementation) pairs in registration order."""
        return list(self._implementations.items())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Processor Registry - handlers the worker attaches to broker queues
class JobProcessor(Protocol):
    """Protocol for job processors invoked once per delivery."""

    async def __call__(self, job: Any) -> dict[str, Any] | None:
        """
        Process one delivered job.

        Args:
            job: JobView exposing ``job_id``, ``job_type``, ``data`` and an
                async ``report_progress(value)`` callback

        Returns:
            Optional result stored on the completed job. A result with
            ``{"status": "processing_batches"}`` leaves the job processing
            until a child batch reports completion.
        """
        ...


@dataclass(frozen=True)
class ProcessorDefinition:
    """Where and how wide a processor runs."""

    queue_alias: str
    job_type: str
    concurrency: int
    handler: JobProcessor


class JobProcessorRegistry(Registry[ProcessorDefinition]):
    """Registry of processors keyed by job type (marketplace-sync, product-batch, ...)."""

    def __init__(self):
        super().__init__("JobProcessor")


# Global registry instance (singleton)
job_processor_registry = JobProcessorRegistry()
