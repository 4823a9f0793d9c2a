from typing import Optional, Dict, Any, List
from openai import AsyncOpenAI

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import CompletionException


class CompletionService:
    """
    Chat completion client used by ai_response nodes and the knowledge-augmented fallback.
    """
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils, client: Optional[AsyncOpenAI] = None):
        self.log_util = log_util
        self.default_model = environment_utils.get_env_variable("OPENAI_MODEL")

        api_key = environment_utils.get_env_variable("OPENAI_API_KEY")
        if client is not None:
            self.client = client
        elif api_key:
            self.client = AsyncOpenAI(api_key=api_key)
        else:
            self.client = None

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 200
    ) -> Dict[str, Any]:
        """
        Run a chat completion.

        Args:
            messages: OpenAI-style role/content messages
            model: Model name, defaults to OPENAI_MODEL
            temperature: Sampling temperature
            max_tokens: Completion token limit

        Returns:
            {"text": str, "model": str, "usage": dict}

        Raises:
            CompletionException when the provider is not configured or the call fails
        """
        if self.client is None:
            raise CompletionException("Completion provider is not configured (OPENAI_API_KEY missing)")

        model_name = model or self.default_model
        try:
            response = await self.client.chat.completions.create(
                model=model_name,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except Exception as e:
            self.log_util.error(
                service_name="CompletionService",
                message=f"[COMPLETION] ❌ {model_name} call failed: {str(e)}"
            )
            raise CompletionException(f"Completion failed: {str(e)}")

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            raise CompletionException("Completion returned an empty response")

        usage = response.usage.model_dump() if getattr(response, "usage", None) else {}
        self.log_util.info(
            service_name="CompletionService",
            message=f"[COMPLETION] ✅ {model_name} returned {len(text)} chars (tokens={usage.get('total_tokens')})"
        )
        return {"text": text, "model": model_name, "usage": usage}
