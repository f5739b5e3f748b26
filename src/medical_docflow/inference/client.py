"""
AI Inference Collaborator

Processing nodes and feature detection call the inference collaborator with
document content and a JSON schema and get structured data back. The engine
never assumes the call succeeds: failures surface as InferenceError and the
calling node turns them into an errors entry.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable
import asyncio
import json
import logging
import re

from langchain_core.prompts import ChatPromptTemplate
from langchain_community.llms import Ollama

from ..workflow.errors import InferenceError

logger = logging.getLogger(__name__)

InferenceProgress = Callable[[str, float, str], None]


@dataclass
class InferenceResult:
    """Structured output of one inference call."""
    data: Any
    tokens_used: int = 0
    provider: str = "unknown"
    raw: Optional[str] = field(default=None, repr=False)


@runtime_checkable
class InferenceClient(Protocol):
    """Anything that can extract schema-shaped data from document content."""

    async def infer(
        self,
        content: Any,
        schema: Dict[str, Any],
        language: str,
        on_progress: Optional[InferenceProgress] = None
    ) -> InferenceResult:
        ...


class OllamaInferenceClient:
    """
    Inference client backed by a local Ollama model.

    The schema is rendered into the prompt and the model is asked to answer
    with a single JSON object, which is parsed and returned.
    """

    SYSTEM_PROMPT = (
        "You are a medical document analyst. Extract information from the "
        "document strictly according to the JSON schema named {schema_name}. "
        "Answer in {language}. Respond with a single JSON object and nothing else."
    )

    HUMAN_PROMPT = (
        "JSON SCHEMA:\n{schema}\n\n"
        "DOCUMENT:\n{content}"
    )

    def __init__(
        self,
        model_name: str = "llama3.2:3b",
        base_url: str = "http://localhost:11434",
        temperature: float = 0.1,
        max_retries: int = 3,
        timeout: Optional[float] = 60,
        provider_name: str = "ollama"
    ):
        self.model_name = model_name
        self.max_retries = max_retries
        self.timeout = timeout
        self.provider_name = provider_name

        self.llm = Ollama(
            model=model_name,
            base_url=base_url,
            temperature=temperature,
            format="json",
        )
        self.prompt = ChatPromptTemplate.from_messages([
            ("system", self.SYSTEM_PROMPT),
            ("human", self.HUMAN_PROMPT),
        ])
        logger.info(f"Initialized Ollama inference client with model {model_name}")

    @classmethod
    def from_settings(cls, llm_config) -> "OllamaInferenceClient":
        return cls(
            model_name=llm_config.ollama_model,
            base_url=llm_config.ollama_base_url,
            temperature=llm_config.temperature,
            max_retries=llm_config.max_retries,
            timeout=llm_config.timeout,
            provider_name=llm_config.default_provider,
        )

    async def infer(
        self,
        content: Any,
        schema: Dict[str, Any],
        language: str,
        on_progress: Optional[InferenceProgress] = None
    ) -> InferenceResult:
        """
        Extract schema-shaped data from the content.

        Args:
            content: Document text (images are not sent to text models)
            schema: JSON schema describing the expected output
            language: Output language
            on_progress: Optional (stage, percent, message) callback

        Returns:
            InferenceResult with the parsed JSON and an estimated token count

        Raises:
            InferenceError: on transport failure after retries or malformed output
        """
        prompt_text = self.prompt.format(
            schema_name=schema.get("name", "extraction"),
            language=language,
            schema=json.dumps(schema.get("parameters", schema), indent=2),
            content=self._content_text(content),
        )

        self._report(on_progress, "request", 10, f"Sending request to {self.model_name}")
        response = await self._invoke_with_retry(prompt_text)
        self._report(on_progress, "parse", 80, "Parsing model response")

        data = self.parse_json_response(response)
        tokens = self._estimate_tokens(prompt_text) + self._estimate_tokens(response)
        self._report(on_progress, "complete", 100, "Inference complete")

        return InferenceResult(data=data, tokens_used=tokens, provider=self.provider_name, raw=response)

    async def _invoke_with_retry(self, prompt_text: str) -> str:
        """Invoke the LLM with retry logic."""
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                if self.timeout:
                    response = await asyncio.wait_for(self.llm.ainvoke(prompt_text), timeout=self.timeout)
                else:
                    response = await self.llm.ainvoke(prompt_text)
                return response.strip()
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"LLM invocation timed out (attempt {attempt + 1}/{self.max_retries})")
            except Exception as e:
                last_error = e
                logger.warning(f"LLM invocation failed (attempt {attempt + 1}/{self.max_retries}): {e}")

            if attempt < self.max_retries - 1:
                await asyncio.sleep(min(2 ** attempt, 8))

        raise InferenceError(
            f"{self.provider_name} inference failed after {self.max_retries} attempts: {last_error}",
            retryable=True,
        )

    @staticmethod
    def parse_json_response(response: str) -> Any:
        """
        Parse the model's answer into JSON.

        Tolerates markdown code fences and leading chatter before the object.

        Raises:
            InferenceError: if no JSON object can be recovered
        """
        text = response.strip()
        fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
        if fenced:
            text = fenced.group(1).strip()

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                pass

        raise InferenceError(f"Malformed model output: {response[:200]!r}")

    @staticmethod
    def _content_text(content: Any) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, dict):
            return content.get("text") or ""
        if isinstance(content, list):
            texts = []
            for part in content:
                if isinstance(part, str) and not part.startswith("data:"):
                    texts.append(part)
                elif isinstance(part, dict) and part.get("type") == "text":
                    texts.append(part.get("text") or "")
            return "\n".join(texts)
        return str(content)

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        # Ollama's completion API does not report usage; ~4 characters per token
        return max(1, len(text) // 4)

    @staticmethod
    def _report(on_progress: Optional[InferenceProgress], stage: str, percent: float, message: str) -> None:
        if on_progress is not None:
            on_progress(stage, percent, message)

