"""Fallback product search through the Shopify Storefront GraphQL API.

Used when no capability source offers a catalog search, or when the source
that does cannot be reached.
"""

import json
from typing import Any, Optional

import httpx

from shared.config import ShopifySettings
from shared.logging import get_logger
from shared.models import RequestContext, ToolDescriptor

logger = get_logger(__name__)


CATALOG_SEARCH_TOOL = "search_shop_catalog"

FALLBACK_TOOL = ToolDescriptor(
    name=CATALOG_SEARCH_TOOL,
    description=(
        "Search the store's product catalog. Use this when customers ask about "
        "available products, pricing, or features."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query for products"
            }
        },
        "required": ["query"]
    },
    source="fallback"
)

SEARCH_PRODUCTS_QUERY = """
query searchProducts($query: String!, $first: Int!) {
  products(first: $first, query: $query) {
    edges {
      node {
        id
        title
        description
        handle
        onlineStoreUrl
        featuredImage { url altText }
        priceRange {
          minVariantPrice { amount currencyCode }
          maxVariantPrice { amount currencyCode }
        }
        variants(first: 5) {
          edges {
            node {
              id
              title
              price { amount currencyCode }
              availableForSale
            }
          }
        }
      }
    }
  }
}
"""


def _format_product(node: dict[str, Any]) -> dict[str, Any]:
    price_range = node.get("priceRange") or {}
    min_price = price_range.get("minVariantPrice") or {}
    max_price = price_range.get("maxVariantPrice") or {}
    image = node.get("featuredImage") or {}

    variants = []
    for edge in (node.get("variants") or {}).get("edges", []):
        variant = edge.get("node", {})
        price = variant.get("price") or {}
        variants.append({
            "id": variant.get("id"),
            "title": variant.get("title"),
            "price": price.get("amount") if isinstance(price, dict) else price,
            "available": variant.get("availableForSale", False),
        })

    return {
        "product_id": node.get("id"),
        "title": node.get("title"),
        "description": node.get("description") or "",
        "url": node.get("onlineStoreUrl") or "",
        "image_url": image.get("url") or "",
        "price_range": {
            "min": min_price.get("amount"),
            "max": max_price.get("amount"),
            "currency": min_price.get("currencyCode"),
        },
        "variants": variants,
    }


class CatalogSearchFallback:
    """Product search that does not depend on an MCP server."""

    def __init__(
        self,
        settings: ShopifySettings,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.settings = settings
        self._client = http_client

    def _endpoint(self, context: RequestContext) -> str:
        return f"{context.host_url}/api/{self.settings.storefront_api_version}/graphql.json"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.storefront_access_token:
            headers["X-Shopify-Storefront-Access-Token"] = self.settings.storefront_access_token
        return headers

    async def search(self, context: RequestContext, query: str) -> dict[str, Any]:
        """
        Search products for a shop.

        Returns:
            An MCP-style result: a text content block holding
            `{products, total_found, query}`, or an `error` object.
        """
        body = {
            "query": SEARCH_PRODUCTS_QUERY,
            "variables": {"query": query, "first": self.settings.fallback_result_limit},
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    self._endpoint(context), json=body, headers=self._headers()
                )
            else:
                async with httpx.AsyncClient(timeout=self.settings.mcp_timeout) as client:
                    response = await client.post(
                        self._endpoint(context), json=body, headers=self._headers()
                    )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error("Fallback product search failed", shop=context.shop, error=str(e))
            return {"error": {"type": "execution_error", "data": str(e)}}

        if data.get("errors"):
            logger.error("Storefront API returned errors", errors=data["errors"])
            return {"error": {"type": "api_error", "data": "Failed to search products"}}

        edges = ((data.get("data") or {}).get("products") or {}).get("edges", [])
        products = [_format_product(edge.get("node", {})) for edge in edges]

        logger.info("Fallback search completed", query=query, total_found=len(products))

        return {
            "content": [{
                "type": "text",
                "text": json.dumps({
                    "products": products,
                    "total_found": len(products),
                    "query": query,
                })
            }]
        }
