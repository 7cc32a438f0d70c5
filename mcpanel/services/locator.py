from typing import Optional

from .runtime import ContainerRuntime


class ContainerLocator:
    def __init__(self, runtime: ContainerRuntime, name_filter: str) -> None:
        self.runtime = runtime
        self.name_filter = name_filter

    async def locate(self, name_filter: Optional[str] = None):
        """First container (running or not) whose name contains the filter, else None."""
        needle = name_filter or self.name_filter
        for container in await self.runtime.list_containers():
            names = {(container.name or "").lstrip("/")}
            names.update(name.lstrip("/") for name in container.attrs.get("Names") or [])
            if any(needle in name for name in names):
                return container
        return None
