from langchain_openai import ChatOpenAI
from langchain_core.prompts import PromptTemplate
from utils.config import ActiveConfig
from utils.exceptions import ProviderError
from utils.logger import logger
from typing import Any, Optional
import json
import re
import time


class LLMService:
    """Text-completion provider backed by an OpenAI chat model."""

    def __init__(self, model: Optional[str] = None, timeout: Optional[int] = None):
        """
        Initialize the LLM service with OpenAI configuration.

        Args:
            model (str, optional): Chat model name. Defaults to ActiveConfig.LLM_MODEL.
            timeout (int, optional): Request timeout in seconds. Defaults to ActiveConfig.LLM_TIMEOUT_SECONDS.
        """
        self.llm = ChatOpenAI(
            model=model or ActiveConfig.LLM_MODEL,
            api_key=ActiveConfig.OPENAI_API_KEY,
            temperature=ActiveConfig.LLM_TEMPERATURE,
            max_tokens=ActiveConfig.LLM_MAX_TOKENS,
            timeout=timeout or ActiveConfig.LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
        self.max_retries = ActiveConfig.MAX_LLM_RETRIES
        self.backoff = ActiveConfig.LLM_RETRY_BACKOFF_SECONDS
        logger.debug("Initialized LLMService")

    def complete(self, prompt: str, max_tokens: Optional[int] = None, temperature: Optional[float] = None) -> str:
        """
        Complete a prompt and return the raw text.

        Args:
            prompt (str): Fully formatted prompt
            max_tokens (int, optional): Completion token cap
            temperature (float, optional): Sampling temperature

        Returns:
            str: Stripped completion text

        Raises:
            ProviderError: If every attempt fails
        """
        overrides = {}
        if max_tokens is not None:
            overrides["max_tokens"] = max_tokens
        if temperature is not None:
            overrides["temperature"] = temperature
        llm = self.llm.bind(**overrides) if overrides else self.llm
        retries = max(self.max_retries, 1)
        logger.debug(f"Completing prompt: {prompt[:50]}...")

        for attempt in range(retries):
            try:
                response = llm.invoke(prompt).content.strip()
                logger.info(f"LLM response: {response[:50]}...")
                return response
            except Exception as e:
                if attempt == retries - 1:
                    logger.error(f"LLM completion failed after {retries} retries: {e}", exc_info=True)
                    raise ProviderError(f"LLM error: {str(e)}")
                logger.warning(f"Attempt {attempt + 1}/{retries} failed: {e}")
                time.sleep(self.backoff * 2 ** attempt)

    def complete_json(self, prompt: str, max_tokens: Optional[int] = None) -> Any:
        """
        Complete a prompt that asks for JSON and parse the reply.

        Markdown fences around the payload are tolerated.

        Raises:
            ProviderError: If the provider fails or the reply is not JSON
        """
        response = self.complete(prompt, max_tokens=max_tokens, temperature=0.0)
        json_match = re.search(r"```(?:json)?\s*(.*?)\s*```", response, re.DOTALL)
        json_str = json_match.group(1) if json_match else response
        try:
            return json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ProviderError(f"LLM returned invalid JSON: {e}")

    def invoke(self, template: str, **kwargs) -> str:
        """
        Format a prompt template and complete it.

        Args:
            template (str): Prompt template with {placeholders}
            **kwargs: Template variables

        Returns:
            str: Completion text
        """
        prompt = PromptTemplate(input_variables=list(kwargs.keys()), template=template)
        return self.complete(prompt.format(**kwargs))
