"""Tool execution and result normalization."""

import json
import time
from typing import Any, Optional

from jsonschema import Draft7Validator

from shared.logging import get_logger
from shared.models import ToolOutcome, ToolResultStatus
from mcp_client.client import MCPAuthError, MCPConnectionError, MCPProtocolError
from mcp_client.discovery import ToolCatalog
from mcp_client.fallback import CATALOG_SEARCH_TOOL, CatalogSearchFallback

logger = get_logger(__name__)


# Tools that can be served by the fallback search
FALLBACK_CAPABLE_TOOLS = {CATALOG_SEARCH_TOOL}


def validate_input(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate tool input against its JSON Schema.

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    errors = list(Draft7Validator(schema).iter_errors(data))
    if not errors:
        return True, []

    return False, [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]


def _decode_json(text: str) -> Optional[Any]:
    text = text.strip()
    if not text or text[0] not in "{[":
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _blocks_to_text(blocks: list[Any]) -> str:
    parts = []
    for block in blocks:
        if isinstance(block, dict):
            if block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            else:
                parts.append(json.dumps(block, default=str))
        else:
            parts.append(str(block))
    return "\n".join(p for p in parts if p)


def normalize_result(tool_name: str, raw: Any) -> ToolOutcome:
    """
    Normalize a backend result into a ToolOutcome.

    Accepted shapes:
    - None or a raw string
    - a JSON object, with an `error` object, an MCP `content` array
      (optionally flagged `isError`), or arbitrary data
    - an array of content blocks
    """
    if raw is None:
        return ToolOutcome(tool_name=tool_name, status=ToolResultStatus.SUCCESS)

    if isinstance(raw, str):
        return ToolOutcome(
            tool_name=tool_name,
            status=ToolResultStatus.SUCCESS,
            content=raw,
            data=_decode_json(raw)
        )

    if isinstance(raw, list):
        text = _blocks_to_text(raw)
        return ToolOutcome(
            tool_name=tool_name,
            status=ToolResultStatus.SUCCESS,
            content=text,
            data=_decode_json(text)
        )

    if isinstance(raw, dict):
        error = raw.get("error")
        if error:
            if isinstance(error, dict):
                code = error.get("type") or "tool_error"
                message = error.get("data") or error.get("message") or json.dumps(error, default=str)
            else:
                code, message = "tool_error", str(error)
            return ToolOutcome.failure(tool_name, code, str(message))

        if "content" in raw:
            content = raw["content"]
            text = _blocks_to_text(content) if isinstance(content, list) else str(content)
            if raw.get("isError"):
                return ToolOutcome.failure(tool_name, "tool_error", text or "Tool reported an error")
            return ToolOutcome(
                tool_name=tool_name,
                status=ToolResultStatus.SUCCESS,
                content=text,
                data=_decode_json(text)
            )

        return ToolOutcome(
            tool_name=tool_name,
            status=ToolResultStatus.SUCCESS,
            content=json.dumps(raw, default=str),
            data=raw
        )

    return ToolOutcome(tool_name=tool_name, status=ToolResultStatus.SUCCESS, content=str(raw))


def _format_price(product: dict[str, Any]) -> str:
    price_range = product.get("price_range")
    if isinstance(price_range, dict) and price_range.get("min") is not None:
        currency = price_range.get("currency") or ""
        return f"{currency} {price_range['min']}".strip()
    price = product.get("price")
    return str(price) if price is not None else "Price not available"


def extract_products(outcome: ToolOutcome, limit: int = 3) -> list[dict[str, Any]]:
    """Pull displayable products out of a successful search result."""
    if outcome.is_error or not isinstance(outcome.data, dict):
        return []

    products = outcome.data.get("products")
    if not isinstance(products, list):
        return []

    formatted = []
    for product in products[:limit]:
        if not isinstance(product, dict):
            continue
        formatted.append({
            "id": product.get("product_id") or product.get("id"),
            "title": product.get("title") or "Product",
            "price": _format_price(product),
            "image_url": product.get("image_url") or "",
            "url": product.get("url") or "",
            "description": product.get("description") or "",
        })
    return formatted


class ToolExecutor:
    """
    Executes tool calls for one session.

    Dispatch order for a tool name:
    1. the capability source that owns it
    2. the fallback search, for fallback-capable tools whose source is
       missing or unreachable
    3. otherwise an `unknown_tool` outcome
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        fallback: Optional[CatalogSearchFallback] = None,
        max_products: int = 3
    ) -> None:
        self.catalog = catalog
        self.fallback = fallback
        self.max_products = max_products

    def _can_fall_back(self, name: str) -> bool:
        return self.fallback is not None and name in FALLBACK_CAPABLE_TOOLS

    async def _dispatch(self, name: str, tool_input: dict[str, Any]) -> Any:
        source = self.catalog.owner_of(name)

        if source is not None:
            try:
                return await source.invoke(name, tool_input)
            except MCPConnectionError as e:
                if not self._can_fall_back(name):
                    raise
                logger.warning(
                    "Capability source unreachable, using fallback search",
                    tool=name,
                    source=source.name,
                    error=str(e)
                )

        if self._can_fall_back(name):
            query = str(tool_input.get("query", ""))
            return await self.fallback.search(self.catalog.context, query)

        return {"error": {"type": "unknown_tool", "data": f"Tool '{name}' is not available"}}

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        products: Optional[list[dict[str, Any]]] = None
    ) -> ToolOutcome:
        """
        Execute a tool and normalize its result.

        Args:
            name: Tool name
            tool_input: Tool arguments
            products: Session accumulator that receives displayable products

        Returns:
            The normalized outcome. Connection failures without a fallback and
            unexpected errors propagate to the caller.
        """
        start = time.perf_counter()

        descriptor = self.catalog.get(name)
        if descriptor is not None:
            valid, errors = validate_input(tool_input, descriptor.input_schema)
            if not valid:
                logger.info("Tool input rejected", tool=name, errors=errors)
                return ToolOutcome.failure(name, "validation_error", "; ".join(errors))

        try:
            raw = await self._dispatch(name, tool_input)
        except MCPAuthError as e:
            outcome = ToolOutcome.failure(name, "auth_error", str(e))
        except MCPProtocolError as e:
            outcome = ToolOutcome.failure(name, "tool_error", str(e))
        else:
            outcome = normalize_result(name, raw)

        outcome.execution_time_ms = (time.perf_counter() - start) * 1000

        if products is not None:
            products.extend(extract_products(outcome, self.max_products))

        logger.info(
            "Tool executed",
            tool=name,
            status=outcome.status.value,
            error_code=outcome.error_code,
            execution_time_ms=round(outcome.execution_time_ms, 1)
        )
        return outcome
