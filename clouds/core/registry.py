from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from clouds.core.model import ServiceNotFoundError
from clouds.core.types import ServiceName


@dataclass(slots=True)
class Service:
    name: ServiceName
    handler: Callable[..., Any]

    def __call__(self, *args: Any) -> Any:
        return self.handler(*args)


@dataclass
class ServiceRegistry:
    """Services registered on this node, by name.

    Only ``register`` mutates the mapping and it runs on the event loop, the
    same as every reader, so no lock is needed.
    """

    _services: dict[ServiceName, Service] = field(default_factory=dict)

    def register(self, service: Service) -> Service | None:
        """Register a service, returning the one it replaced (if any)."""
        previous = self._services.get(service.name)
        self._services[service.name] = service
        return previous

    def get(self, name: ServiceName) -> Service:
        """Get a service by name."""
        try:
            return self._services[name]
        except KeyError:
            raise ServiceNotFoundError(name) from None

    def names(self) -> tuple[ServiceName, ...]:
        return tuple(self._services)

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __iter__(self) -> Iterator[Service]:
        return iter(tuple(self._services.values()))

    def __len__(self) -> int:
        return len(self._services)
