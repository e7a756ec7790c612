"""DeepSeek adapter (deepseek-chat and deepseek-reasoner).

Reasoner models stream their chain of thought as delta.reasoning_content;
it is collected separately and never sent back in later turns.
"""

from __future__ import annotations

from conduit.providers.openai_compat import OpenAICompatibleProvider


class DeepSeekProvider(OpenAICompatibleProvider):
    provider_name = "deepseek"
    default_base_url = "https://api.deepseek.com"

    def is_reasoning_model(self) -> bool:
        return self.config.model == "deepseek-reasoner"
