"""System prompts, selected per request by prompt type."""

from pathlib import Path
from typing import Optional

from shared.config import load_yaml_config
from shared.logging import get_logger

logger = get_logger(__name__)


DEFAULT_PROMPTS: dict[str, str] = {
    "standardAssistant": """You are a helpful shopping assistant for an online store.

Help customers find products, answer questions about the catalog, and guide them toward a purchase.

Guidelines:
- Use the available tools to look up products; never invent products, prices or availability
- Search once per distinct request; if a search returns nothing, say so and suggest alternatives instead of repeating it
- Keep answers short and friendly
- If a tool returns an error, explain the issue plainly
""",
    "enthusiasticAssistant": """You are an upbeat, enthusiastic shopping assistant for an online store!

Help customers discover products they will love and answer their questions with energy.

Guidelines:
- Use the available tools to look up products; never invent products, prices or availability
- Search once per distinct request; if a search returns nothing, say so and suggest alternatives instead of repeating it
- Keep answers concise, warm and positive
- If a tool returns an error, explain the issue plainly
""",
}


class PromptCatalog:
    """Maps prompt types to system prompts; unknown types use the default."""

    def __init__(
        self,
        prompts: Optional[dict[str, str]] = None,
        default_type: str = "standardAssistant"
    ) -> None:
        self.prompts = dict(DEFAULT_PROMPTS)
        if prompts:
            self.prompts.update(prompts)
        if default_type not in self.prompts:
            raise ValueError(f"Default prompt type '{default_type}' is not defined")
        self.default_type = default_type

    @classmethod
    def from_yaml(cls, path: str | Path, default_type: str = "standardAssistant") -> "PromptCatalog":
        """
        Load extra prompts from YAML.

        Accepts either `{name: text}` or `{systemPrompts: {name: {content: text}}}`.
        """
        data = load_yaml_config(path)
        entries = data.get("systemPrompts", data)

        prompts = {}
        for name, value in entries.items():
            if isinstance(value, dict):
                value = value.get("content")
            if isinstance(value, str) and value.strip():
                prompts[name] = value

        logger.info("Loaded prompts", path=str(path), count=len(prompts))
        return cls(prompts, default_type)

    def get(self, prompt_type: Optional[str] = None) -> str:
        if prompt_type and prompt_type in self.prompts:
            return self.prompts[prompt_type]
        return self.prompts[self.default_type]

    def resolve_type(self, prompt_type: Optional[str] = None) -> str:
        return prompt_type if prompt_type in self.prompts else self.default_type
