"""Tool discovery across capability sources.

Each chat session gets its own ToolCatalog: the merged, ordered tool set of
every source that answered, or the fallback catalog search when none did.
"""

from collections.abc import Callable
from typing import Optional

from shared.logging import get_logger
from shared.models import RequestContext, ToolDescriptor
from mcp_client.fallback import FALLBACK_TOOL
from mcp_client.sources import CapabilitySource

logger = get_logger(__name__)


SourceFactory = Callable[[RequestContext], list[CapabilitySource]]


class ToolCatalog:
    """
    Tools available to one session.

    Keeps descriptors in discovery order and remembers which source owns
    each tool name.
    """

    def __init__(
        self,
        context: RequestContext,
        sources: Optional[list[CapabilitySource]] = None
    ) -> None:
        self.context = context
        self.sources = sources or []
        self.fallback_active = False
        self._descriptors: dict[str, ToolDescriptor] = {}
        self._owners: dict[str, CapabilitySource] = {}

    def add(self, descriptor: ToolDescriptor, owner: Optional[CapabilitySource] = None) -> bool:
        """Register a tool; returns False when the name is already taken."""
        if descriptor.name in self._descriptors:
            return False
        self._descriptors[descriptor.name] = descriptor
        if owner is not None:
            self._owners[descriptor.name] = owner
        return True

    def install_fallback(self) -> None:
        self.add(FALLBACK_TOOL)
        self.fallback_active = True

    @property
    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._descriptors.values())

    @property
    def names(self) -> list[str]:
        return list(self._descriptors)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._descriptors.get(name)

    def owner_of(self, name: str) -> Optional[CapabilitySource]:
        return self._owners.get(name)

    async def aclose(self) -> None:
        """Close every source of the session."""
        for source in self.sources:
            try:
                await source.close()
            except Exception as e:
                logger.warning("Error closing capability source", source=source.name, error=str(e))

    def __len__(self) -> int:
        return len(self._descriptors)


class ToolRegistry:
    """
    Discovers tools for a request.

    A source that fails contributes no tools; discovery carries on with the
    remaining sources. When nothing is discovered, exactly one fallback
    catalog-search tool is installed.
    """

    def __init__(self, source_factory: SourceFactory) -> None:
        """
        Initialize the registry.

        Args:
            source_factory: Builds fresh capability sources for a request context
        """
        self.source_factory = source_factory

    async def discover(self, context: RequestContext) -> ToolCatalog:
        try:
            sources = self.source_factory(context)
        except Exception as e:
            logger.error("Could not build capability sources", shop=context.shop, error=str(e))
            sources = []

        catalog = ToolCatalog(context, sources)

        for source in sources:
            try:
                tools = await source.connect(context)
            except Exception as e:
                logger.warning(
                    "Capability source unavailable",
                    source=source.name,
                    shop=context.shop,
                    error=str(e)
                )
                continue

            added = [tool.name for tool in tools if catalog.add(tool, source)]
            logger.info(
                "Capability source connected",
                source=source.name,
                tool_count=len(added),
                tools=added
            )

        if len(catalog) == 0:
            logger.info("No tools discovered, installing fallback", shop=context.shop)
            catalog.install_fallback()

        return catalog
