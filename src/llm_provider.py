#!/usr/bin/env python3
"""
LLM Provider Abstraction Layer

Supports multiple LLM providers (OpenAI, Anthropic Claude, Google Gemini)
with a unified interface for schema-constrained function calls. Both the batch
classifier and the conflict resolver talk to the model only through this layer.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Any, Optional
from dataclasses import dataclass
import tiktoken
from dotenv import load_dotenv

from config_manager import LLMConfig, ModelInfo, get_llm_config

# Load environment variables from .env file
load_dotenv()

# Optional imports - only load what's available
try:
    import openai
    OPENAI_AVAILABLE = True
except ImportError:
    OPENAI_AVAILABLE = False
    print("OpenAI not available - install with: pip install openai")

try:
    import anthropic
    ANTHROPIC_AVAILABLE = True
except ImportError:
    ANTHROPIC_AVAILABLE = False
    print("Anthropic not available - install with: pip install anthropic")

try:
    import google.generativeai as genai
    from google.api_core import exceptions as google_exceptions
    GEMINI_AVAILABLE = True
except ImportError:
    GEMINI_AVAILABLE = False
    print("Gemini not available - install with: pip install google-generativeai")


class LLMProviderError(RuntimeError):
    """Non-retryable failure talking to an LLM provider"""


class TransientLLMError(LLMProviderError):
    """Network, timeout, rate limit or server-side failure worth retrying"""


@dataclass
class LLMResponse:
    content: str
    input_tokens: int
    output_tokens: int
    model: str
    provider: str
    processing_time: float
    # JSON-encoded arguments of the forced function call, None if the model did not call it
    tool_arguments: Optional[str] = None
    raw_response: Optional[Any] = None
    finish_reason: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class RateLimiter:
    """Caps requests per minute across every thread sharing the limiter"""

    def __init__(self, max_requests_per_minute: int, sleep: Callable[[float], None] = time.sleep):
        self.max_requests = max_requests_per_minute
        self.sleep = sleep
        self.lock = threading.Lock()
        self.request_count = 0
        self.minute_start = time.time()

    def wait_if_needed(self):
        if self.max_requests <= 0:
            return
        with self.lock:
            current_time = time.time()

            # Reset counter if a minute has passed
            if current_time - self.minute_start >= 60.0:
                self.request_count = 0
                self.minute_start = current_time

            if self.request_count >= self.max_requests:
                wait_time = 60.0 - (current_time - self.minute_start)
                if wait_time > 0:
                    print(f"  ⏳  Rate limit reached, waiting {wait_time:.1f}s...")
                    self.sleep(wait_time)
                self.request_count = 0
                self.minute_start = time.time()

            self.request_count += 1


def calculate_cost(prompt_tokens: int, completion_tokens: int, model_info: Optional[ModelInfo]) -> float:
    """Dollar cost of a call from the per-million token prices of the model"""
    if model_info is None:
        return 0.0
    input_cost = (prompt_tokens / 1_000_000) * model_info.input_price_per_million
    output_cost = (completion_tokens / 1_000_000) * model_info.output_price_per_million
    return input_cost + output_cost


class LLMProvider(ABC):
    """Abstract base class for LLM providers"""

    provider_name = "unknown"
    model = "unknown"

    @abstractmethod
    def call_function(self, system_message: str, prompt: str, function_schema: Dict[str, Any]) -> LLMResponse:
        """Call the model, forcing it to answer through the given function schema"""
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        """Count tokens in text"""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if provider is properly configured"""
        pass


class _TiktokenCounter:
    """Lazily loaded tokenizer used when a provider does not report usage"""

    def __init__(self, model: str):
        self.model = model
        self._encoding = None

    def count(self, text: str) -> int:
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                # Non-OpenAI model names: approximate with the gpt-4 encoding
                self._encoding = tiktoken.get_encoding("cl100k_base")
        return len(self._encoding.encode(text))


class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider"""

    provider_name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", temperature: float = 0.0,
                 output_max_token_size: int = 4096, request_timeout: float = 120.0):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.output_max_token_size = output_max_token_size
        self.client = openai.OpenAI(api_key=self.api_key, timeout=request_timeout, max_retries=0) if self.api_key and OPENAI_AVAILABLE else None
        self.tokenizer = _TiktokenCounter(model)

    def is_available(self) -> bool:
        return OPENAI_AVAILABLE and self.client is not None

    def count_tokens(self, text: str) -> int:
        return self.tokenizer.count(text)

    def call_function(self, system_message: str, prompt: str, function_schema: Dict[str, Any]) -> LLMResponse:
        if not self.is_available():
            raise LLMProviderError("OpenAI provider not available")

        start_time = time.time()

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_message},
                    {"role": "user", "content": prompt}
                ],
                tools=[{"type": "function", "function": function_schema}],
                tool_choice={"type": "function", "function": {"name": function_schema["name"]}},
                temperature=self.temperature,
                max_tokens=self.output_max_token_size
            )
        except (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError,
                openai.InternalServerError) as e:
            raise TransientLLMError(f"OpenAI API call failed: {e}") from e
        except openai.OpenAIError as e:
            raise LLMProviderError(f"OpenAI API call failed: {e}") from e

        choice = response.choices[0] if response.choices else None
        message = choice.message if choice else None
        tool_calls = getattr(message, "tool_calls", None) or []
        tool_arguments = tool_calls[0].function.arguments if tool_calls else None
        content = (message.content if message else None) or ""

        usage = response.usage
        if usage is not None:
            input_tokens = usage.prompt_tokens
            output_tokens = usage.completion_tokens
        else:
            input_tokens = self.count_tokens(system_message + prompt)
            output_tokens = self.count_tokens(tool_arguments or content)

        return LLMResponse(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model,
            provider=self.provider_name,
            processing_time=time.time() - start_time,
            tool_arguments=tool_arguments,
            raw_response=response,
            finish_reason=choice.finish_reason if choice else None
        )


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider"""

    provider_name = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-20241022", temperature: float = 0.0,
                 output_max_token_size: int = 4096, request_timeout: float = 120.0):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.output_max_token_size = output_max_token_size
        self.client = anthropic.Anthropic(api_key=self.api_key, timeout=request_timeout, max_retries=0) if self.api_key and ANTHROPIC_AVAILABLE else None
        # Claude uses different tokenization, approximate with OpenAI tokenizer
        self.tokenizer = _TiktokenCounter("gpt-4")

    def is_available(self) -> bool:
        return ANTHROPIC_AVAILABLE and self.client is not None

    def count_tokens(self, text: str) -> int:
        return self.tokenizer.count(text)

    def call_function(self, system_message: str, prompt: str, function_schema: Dict[str, Any]) -> LLMResponse:
        if not self.is_available():
            raise LLMProviderError("Anthropic provider not available")

        start_time = time.time()

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.output_max_token_size,
                temperature=self.temperature,
                system=system_message,
                messages=[{"role": "user", "content": prompt}],
                tools=[{
                    "name": function_schema["name"],
                    "description": function_schema.get("description", ""),
                    "input_schema": function_schema["parameters"]
                }],
                tool_choice={"type": "tool", "name": function_schema["name"]}
            )
        except (anthropic.RateLimitError, anthropic.APITimeoutError, anthropic.APIConnectionError,
                anthropic.InternalServerError) as e:
            raise TransientLLMError(f"Anthropic API call failed: {e}") from e
        except anthropic.AnthropicError as e:
            raise LLMProviderError(f"Anthropic API call failed: {e}") from e

        tool_arguments = None
        text_parts = []
        for block in response.content:
            if block.type == "tool_use" and tool_arguments is None:
                tool_arguments = json.dumps(block.input)
            elif block.type == "text":
                text_parts.append(block.text)

        return LLMResponse(
            content="".join(text_parts),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=self.model,
            provider=self.provider_name,
            processing_time=time.time() - start_time,
            tool_arguments=tool_arguments,
            raw_response=response,
            finish_reason=response.stop_reason
        )


class GeminiProvider(LLMProvider):
    """Google Gemini provider

    Gemini is asked for a JSON document matching the function parameters
    instead of a tool call; the JSON body is returned as the tool arguments.
    """

    provider_name = "gemini"

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash", temperature: float = 0.0,
                 output_max_token_size: int = 8192, request_timeout: float = 120.0):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.output_max_token_size = output_max_token_size
        self.request_timeout = request_timeout
        self.available = bool(self.api_key) and GEMINI_AVAILABLE
        if self.available:
            genai.configure(api_key=self.api_key)
        self.tokenizer = _TiktokenCounter("gpt-4")

    def is_available(self) -> bool:
        return self.available

    def count_tokens(self, text: str) -> int:
        return self.tokenizer.count(text)

    def call_function(self, system_message: str, prompt: str, function_schema: Dict[str, Any]) -> LLMResponse:
        if not self.is_available():
            raise LLMProviderError("Gemini provider not available")

        start_time = time.time()
        client = genai.GenerativeModel(self.model, system_instruction=system_message)
        schema_prompt = (
            f"{prompt}\n\nRespond with a single JSON object for the function "
            f"'{function_schema['name']}' matching this JSON schema exactly:\n"
            f"{json.dumps(function_schema['parameters'], indent=2)}"
        )

        try:
            response = client.generate_content(
                schema_prompt,
                generation_config=genai.types.GenerationConfig(
                    temperature=self.temperature,
                    max_output_tokens=self.output_max_token_size,
                    response_mime_type="application/json"
                ),
                request_options={"timeout": self.request_timeout}
            )
        except (google_exceptions.ResourceExhausted, google_exceptions.ServiceUnavailable,
                google_exceptions.DeadlineExceeded, google_exceptions.InternalServerError) as e:
            raise TransientLLMError(f"Gemini API call failed: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            raise LLMProviderError(f"Gemini API call failed: {e}") from e

        try:
            content = response.text
        except ValueError as e:
            # Raised when the candidate was blocked or carries no text part
            raise LLMProviderError(f"Gemini content extraction failed: {e}") from e

        usage = getattr(response, "usage_metadata", None)
        input_tokens = getattr(usage, "prompt_token_count", None) or self.count_tokens(schema_prompt)
        output_tokens = getattr(usage, "candidates_token_count", None) or self.count_tokens(content)
        finish_reason = None
        if response.candidates:
            finish_reason = str(getattr(response.candidates[0], "finish_reason", None))

        return LLMResponse(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model,
            provider=self.provider_name,
            processing_time=time.time() - start_time,
            tool_arguments=content,
            raw_response=response,
            finish_reason=finish_reason
        )


PROVIDER_CLASSES = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def create_llm_provider(model_info: ModelInfo, api_key: str,
                        llm_config: Optional[LLMConfig] = None) -> LLMProvider:
    """Factory function building the provider that serves a catalog model"""
    if model_info.provider not in PROVIDER_CLASSES:
        raise ValueError(f"Unsupported LLM provider: {model_info.provider}")

    llm_config = llm_config or get_llm_config(model_info.provider)
    provider = PROVIDER_CLASSES[model_info.provider](
        api_key=api_key,
        model=model_info.api_model_string,
        temperature=llm_config.temperature,
        output_max_token_size=llm_config.output_max_token_size,
        request_timeout=llm_config.request_timeout
    )

    if not provider.is_available():
        raise LLMProviderError(f"Provider '{model_info.provider}' not available - check the SDK install and API key")

    print(f"✓ {model_info.provider} provider initialized ({model_info.api_model_string})")
    return provider
