from __future__ import annotations

"""Resource catalog protocol.

The engine never owns domain entities; the host application exposes the
resources a human may refer to through a ``ResourceCatalog``. The entity
recognizer uses it to turn names into ids and the reference gatherer uses it
to resolve ``$type:name`` references inside TODO item arguments.
"""

from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from ..schemas.domain import ResourceRef


class ResourceCatalog(Protocol):
    """Read-only lookup of resources known to the host application."""

    def list_resources(self, resource_type: Optional[str] = None) -> Sequence[ResourceRef]: ...


class InMemoryResourceCatalog:
    """Dictionary backed catalog, mainly for tests and embedded use."""

    def __init__(self, resources: Iterable[ResourceRef] = ()) -> None:
        self._by_type: Dict[str, List[ResourceRef]] = {}
        for res in resources:
            self.add(res)

    def add(self, resource: ResourceRef) -> None:
        self._by_type.setdefault(resource.type, []).append(resource)

    def list_resources(self, resource_type: Optional[str] = None) -> Sequence[ResourceRef]:
        if resource_type is None:
            return [r for items in self._by_type.values() for r in items]
        return list(self._by_type.get(resource_type, []))
