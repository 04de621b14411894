"""
LiteLLM Client

Text generation backend. A plain prompt string goes through
litellm.atext_completion, a list of chat messages through litellm.acompletion.
"""

import litellm
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Union, AsyncIterator
import logging

logger = logging.getLogger(__name__)

PromptOrMessages = Union[str, List[Dict[str, str]]]


@dataclass
class LLMResult:
    text: str
    tokens_used: int = 0


class LLMClient:
    """Builds LiteLLM parameters for one configured provider and runs completions"""

    def __init__(
        self,
        api_type: str,
        api_url: str,
        model_name: str,
        api_key: str = "",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop: Optional[List[str]] = None,
    ):
        if not model_name:
            raise ValueError("LLM model name not configured")
        if not api_type:
            raise ValueError("LLM API type not configured")

        self.api_type = api_type
        self.api_url = api_url
        self.model_name = model_name
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.stop = stop or []

        self.model_string = self._build_model_string()
        litellm.set_verbose = False
        logger.info(f"Configured LiteLLM for {self.api_type} with model {self.model_string}")

    @classmethod
    def from_settings(cls, config) -> "LLMClient":
        return cls(
            api_type=config.llm_api_type,
            api_url=config.llm_base_url,
            model_name=config.llm_model,
            api_key=config.llm_api_key,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
            stop=config.llm_stop_sequences,
        )

    def _build_model_string(self, model_name: Optional[str] = None) -> str:
        """Build LiteLLM model string based on provider type"""
        name = model_name or self.model_name
        if self.api_type == "openai":
            return name
        elif self.api_type in ("openai-compatible", "openai_compatible", "lm_studio"):
            return f"openai/{name}"
        elif self.api_type == "ollama":
            return f"ollama/{name}"
        elif self.api_type == "anthropic":
            return f"anthropic/{name}"
        elif self.api_type == "cohere":
            return f"cohere/{name}"
        else:
            return f"openai/{name}"

    def get_generation_params(
        self,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Get generation parameters for API calls"""
        params = {
            "model": self._build_model_string(model) if model else self.model_string,
        }

        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        elif self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        else:
            params["max_tokens"] = 2048

        if temperature is not None:
            params["temperature"] = temperature
        elif self.temperature is not None:
            params["temperature"] = self.temperature
        else:
            params["temperature"] = 0.7

        if self.stop:
            params["stop"] = self.stop

        if self.api_type in ("openai-compatible", "openai_compatible", "lm_studio", "ollama"):
            params["api_base"] = self.api_url
            if self.api_key and self.api_key.strip():
                params["api_key"] = self.api_key
            elif self.api_type != "ollama":
                params["api_key"] = "not-needed"
        elif self.api_key:
            params["api_key"] = self.api_key

        logger.debug(f"Generation params: { {k: v for k, v in params.items() if k != 'api_key'} }")
        return params

    async def generate(
        self,
        prompt_or_messages: PromptOrMessages,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResult:
        params = self.get_generation_params(max_tokens, temperature, model)

        if isinstance(prompt_or_messages, str):
            response = await litellm.atext_completion(prompt=prompt_or_messages, **params)
            text = response.choices[0].text
        else:
            response = await litellm.acompletion(messages=prompt_or_messages, **params)
            text = response.choices[0].message.content

        usage = getattr(response, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) if usage else 0
        return LLMResult(text=text or "", tokens_used=tokens_used or 0)

    async def stream(
        self,
        prompt_or_messages: PromptOrMessages,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        params = self.get_generation_params(max_tokens, temperature, model)
        params["stream"] = True

        if isinstance(prompt_or_messages, str):
            response = await litellm.atext_completion(prompt=prompt_or_messages, **params)
            async for chunk in response:
                content = chunk.choices[0].text if chunk.choices else None
                if content:
                    yield content
        else:
            response = await litellm.acompletion(messages=prompt_or_messages, **params)
            async for chunk in response:
                delta = chunk.choices[0].delta if chunk.choices else None
                content = getattr(delta, "content", None) if delta else None
                if content:
                    yield content
