"""
AuraVoice - Reply Generation Module
===================================

Produce a short, empathetic reply to what the user said.

Features:
- Ordered provider chain: OpenAI -> Groq -> local llama.cpp (any subset)
- A provider fails on exception, timeout or empty content; the next one runs
- Calls are sequential, never concurrent (no duplicate usage/billing)
- Input language detection (English / Chinese) drives the prompt and the
  canned fallback table
- When every provider fails, a random canned reply in the user's language
  is returned, so a turn never ends without an answer

Providers:
- OpenAIChatProvider: Chat Completions, then the Responses API as a second try
- GroqChatProvider: OpenAI-compatible Groq endpoint
- LocalLlamaProvider: GGUF model through llama-cpp-python (CPU friendly)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence
import asyncio
import logging
import random
import re
import threading
import time

import httpx

from .errors import ProviderExhaustedError, TransportError

# Import llama-cpp-python
try:
    from llama_cpp import Llama
    HAS_LLAMA_CPP = True
except ImportError:
    HAS_LLAMA_CPP = False

log = logging.getLogger(__name__)


# =============================================================================
# Language
# =============================================================================

LANG_EN = "en-US"
LANG_ZH = "zh-CN"

CJK_PATTERN = re.compile(r"[\u4E00-\u9FFF\u3400-\u4DBF]")
CJK_THRESHOLD = 0.3     # Fraction of CJK characters that makes text Chinese


def detect_language(text: str) -> str:
    """Return "zh-CN" when more than 30% of the characters are CJK, else "en-US"."""
    if not text:
        return LANG_EN
    cjk = len(CJK_PATTERN.findall(text))
    return LANG_ZH if cjk / len(text) > CJK_THRESHOLD else LANG_EN


# Short fallback replies, used when no provider answers
EMPATHETIC_RESPONSES = {
    LANG_EN: [
        "I hear you. That sounds tough.",
        "I understand. That must be difficult.",
        "You're not alone in feeling this way.",
        "That's a challenging situation. I'm here to listen.",
        "Thank you for sharing. Your feelings matter.",
        "It's okay to feel this way. You'll get through this.",
        "I'm sorry you're going through this.",
    ],
    LANG_ZH: [
        "我理解。那一定很难。",
        "你不是一个人。我在这里。",
        "感谢你的分享。你的感受很重要。",
        "这是一个挑战。你会度过这一关。",
        "我很遗憾你要经历这个。",
        "那听起来很困难。坚持下去。",
        "你很勇敢。继续前进。",
    ],
}

LANGUAGE_INSTRUCTIONS = {
    LANG_EN: (
        "You are an empathetic AI assistant. Listen to what the user says and "
        "respond directly to their specific situation.\n"
        "Keep your response brief - only 1-2 sentences. Be relevant and personal "
        "to what they shared.\n"
        "User said:"
    ),
    LANG_ZH: (
        "你是一个同情心强的AI助手。根据用户说的话，给出相关的、个性化的回应。\n"
        "使用中文回应。只用1-2句话。直接回应用户的具体情况："
    ),
}

DEFAULT_SYSTEM_PROMPT = """You are AuraVoice AI, a warm, empathetic voice assistant. Your role is to:
- Listen carefully and show genuine understanding
- Validate the user's feelings and concerns
- Respond with warmth, compassion, and authenticity
- Offer thoughtful, supportive feedback
- Keep responses brief (under 30 seconds of speech) but meaningful
- Use a conversational, human tone, no robotic phrasing
Always respond as if you truly care about what the user just shared."""


def build_prompt(user_text: str, language: Optional[str] = None) -> str:
    """Wrap the user's words in the language-matched instruction."""
    language = language or detect_language(user_text)
    return f'{LANGUAGE_INSTRUCTIONS[language]}\n"{user_text}"'


# =============================================================================
# Providers
# =============================================================================

class ReplyProvider(ABC):
    """One generation backend. complete() raises TransportError on failure."""

    name: str = "provider"

    @property
    def available(self) -> bool:
        """False when the provider cannot run (e.g. no API key). Skipped by the chain."""
        return True

    @abstractmethod
    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Return the reply text for a prompt."""

    async def aclose(self) -> None:
        pass


class ChatCompletionsProvider(ReplyProvider):
    """OpenAI-compatible /chat/completions endpoint over httpx."""

    name = "chat"
    base_url = "https://api.openai.com/v1"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        max_tokens: int = 80,
        temperature: float = 0.7,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        if base_url:
            self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _messages(self, prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    async def _post(self, path: str, payload: Dict) -> Dict:
        try:
            response = await self.client.post(
                f"{self.base_url}{path}", headers=self._headers(), json=payload
            )
        except httpx.TimeoutException as e:
            raise TransportError(self.name, f"request timed out: {e}", category="timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(self.name, f"request failed: {e}", category="network") from e

        if response.status_code != 200:
            raise TransportError(
                self.name, response.text[:200], status=response.status_code, category="http"
            )
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(self.name, "invalid JSON body", status=200, category="decode") from e

    async def _chat(self, prompt: str, system_prompt: Optional[str]) -> str:
        data = await self._post("/chat/completions", {
            "model": self.model,
            "messages": self._messages(prompt, system_prompt),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        })
        choices = data.get("choices") or [{}]
        return ((choices[0].get("message") or {}).get("content") or "").strip()

    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.api_key:
            raise TransportError(self.name, "API key not configured", category="config")
        return await self._chat(prompt, system_prompt)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAIChatProvider(ChatCompletionsProvider):
    """
    OpenAI provider.

    Tries Chat Completions first. If that errors or comes back empty, the
    Responses API is tried with the same prompt before giving up.
    """

    name = "openai"

    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini", **kwargs):
        super().__init__(api_key, model, **kwargs)

    async def _responses(self, prompt: str, system_prompt: Optional[str]) -> str:
        data = await self._post("/responses", {
            "model": self.model,
            "input": self._messages(prompt, system_prompt),
            "max_output_tokens": self.max_tokens,
            "temperature": self.temperature,
        })
        text = data.get("output_text")
        if text:
            return text.strip()

        parts = []
        for item in data.get("output") or []:
            for content in item.get("content") or []:
                if content.get("text"):
                    parts.append(content["text"])
        if parts:
            return "".join(parts).strip()

        choices = data.get("choices") or [{}]
        return ((choices[0].get("message") or {}).get("content") or "").strip()

    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.api_key:
            raise TransportError(self.name, "API key not configured", category="config")

        try:
            text = await self._chat(prompt, system_prompt)
            if text:
                return text
        except TransportError as e:
            log.warning("OpenAI Chat API error: %s", e)

        return await self._responses(prompt, system_prompt)


class GroqChatProvider(ChatCompletionsProvider):
    """Groq's OpenAI-compatible chat endpoint."""

    name = "groq"
    base_url = "https://api.groq.com/openai/v1"

    def __init__(self, api_key: Optional[str], model: str = "llama-3.1-8b-instant", **kwargs):
        super().__init__(api_key, model, **kwargs)


@dataclass
class LLMConfig:
    """Configuration for local LLM inference."""
    model_path: str = ""            # Path to GGUF model file
    n_ctx: int = 1024               # Context window size
    n_threads: int = 4              # CPU threads for inference
    n_gpu_layers: int = 0           # GPU layers (0 = CPU only)
    max_tokens: int = 80            # Max tokens in response
    temperature: float = 0.7        # Randomness (0 = deterministic)
    top_p: float = 0.9              # Nucleus sampling
    top_k: int = 40                 # Top-k sampling
    repeat_penalty: float = 1.1     # Penalize repetition
    verbose: bool = False           # Show llama.cpp logs


# Special tokens that can leak into local model output
_LEAKED_TOKEN_PATTERNS = [
    r'<\|im_end\|>',
    r'<\|im_start\|>',
    r'<\|endoftext\|>',
    r'<\|eot_id\|>',
    r'<\|end_of_text\|>',
    r'<\|start_header_id\|>',
    r'<\|end_header_id\|>',
    r'<\|begin_of_text\|>',
    r'</s>',
    r'\[/INST\]',
    # Role markers that might leak
    r'(system|user|assistant)\|end_header_id\|>',
]


class LocalLlamaProvider(ReplyProvider):
    """
    Local GGUF model via llama-cpp-python.

    The model is loaded on first use in a worker thread, and inference also
    runs in a worker thread so the event loop keeps ticking.

    Usage:
        provider = LocalLlamaProvider(LLMConfig(model_path="models/llm/qwen2.5-1.5b.gguf"))
        text = await provider.complete(prompt, system_prompt)
    """

    name = "local"

    def __init__(self, config: Optional[LLMConfig] = None, model=None):
        self.config = config or LLMConfig()
        self._model = model
        self._chat_format = "chatml"
        self._lock = threading.Lock()

        # Statistics
        self._stats = {
            "generations": 0,
            "total_tokens": 0,
            "total_time": 0.0,
        }

    @property
    def available(self) -> bool:
        if self._model is not None:
            return True
        return HAS_LLAMA_CPP and bool(self.config.model_path) and Path(self.config.model_path).exists()

    @staticmethod
    def detect_chat_format(model_name: str) -> str:
        """Pick the chat template from the model file name."""
        name = model_name.lower()
        if "qwen" in name:
            return "chatml"
        if "llama-3" in name or "llama3" in name:
            return "llama-3"
        if "mistral" in name:
            return "mistral-instruct"
        return "chatml"

    def _get_stop_tokens(self) -> List[str]:
        if self._chat_format == "chatml":
            return ["<|im_end|>", "<|endoftext|>", "<|im_start|>"]
        if self._chat_format == "llama-3":
            return ["<|eot_id|>", "<|end_of_text|>"]
        if self._chat_format == "mistral-instruct":
            return ["</s>", "[/INST]"]
        return ["<|eot_id|>", "<|end|>", "</s>", "<|im_end|>"]

    @staticmethod
    def clean_response(text: str) -> str:
        """Remove any leaked special tokens from a response."""
        for pattern in _LEAKED_TOKEN_PATTERNS:
            text = re.sub(pattern, '', text, flags=re.IGNORECASE)
        text = re.sub(r'\n{3,}', '\n\n', text)
        return text.strip()

    def _load(self):
        if self._model is not None:
            return self._model
        if not HAS_LLAMA_CPP:
            raise ImportError(
                "llama-cpp-python not installed. "
                "Run: pip install llama-cpp-python"
            )

        model_path = Path(self.config.model_path)
        if not model_path.exists():
            raise FileNotFoundError(f"Model not found: {model_path}")

        self._chat_format = self.detect_chat_format(model_path.name)
        log.info(
            "Loading local LLM %s (ctx=%d, threads=%d, format=%s)",
            model_path.name, self.config.n_ctx, self.config.n_threads, self._chat_format,
        )
        load_start = time.time()
        self._model = Llama(
            model_path=str(model_path),
            n_ctx=self.config.n_ctx,
            n_threads=self.config.n_threads,
            n_gpu_layers=self.config.n_gpu_layers,
            verbose=self.config.verbose,
            chat_format=self._chat_format,
        )
        log.info("Local LLM loaded in %.1fs", time.time() - load_start)
        return self._model

    def _generate(self, prompt: str, system_prompt: Optional[str]) -> str:
        with self._lock:
            model = self._load()
            start_time = time.time()
            response = model.create_chat_completion(
                messages=[
                    {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                top_p=self.config.top_p,
                top_k=self.config.top_k,
                repeat_penalty=self.config.repeat_penalty,
                stop=self._get_stop_tokens(),
            )
            content = response["choices"][0]["message"]["content"] or ""

            self._stats["generations"] += 1
            self._stats["total_tokens"] += response.get("usage", {}).get("completion_tokens", 0)
            self._stats["total_time"] += time.time() - start_time

        return self.clean_response(content)

    async def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        try:
            return await asyncio.to_thread(self._generate, prompt, system_prompt)
        except (ImportError, FileNotFoundError) as e:
            raise TransportError(self.name, str(e), category="config") from e
        except Exception as e:
            raise TransportError(self.name, f"inference failed: {e}", category="inference") from e

    def get_stats(self) -> Dict:
        stats = dict(self._stats)
        if stats["generations"] > 0:
            stats["avg_time"] = stats["total_time"] / stats["generations"]
        return stats


# =============================================================================
# Generator (fallback chain)
# =============================================================================

@dataclass
class GeneratorConfig:
    """Configuration for the generation chain."""
    provider_timeout_sec: Optional[float] = 15.0   # Per-provider deadline (None = none)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    canned_fallback: bool = True    # False = raise ProviderExhaustedError instead
    canned_responses: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in EMPATHETIC_RESPONSES.items()}
    )


class ReplyGenerator:
    """
    Runs the provider chain for one user utterance.

    Usage:
        generator = ReplyGenerator([OpenAIChatProvider(key), GroqChatProvider(key)])
        reply = await generator.generate("I had a rough day")
    """

    def __init__(
        self,
        providers: Sequence[ReplyProvider],
        config: Optional[GeneratorConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.providers = list(providers)
        self.config = config or GeneratorConfig()
        self._rng = rng or random.Random()
        self.last_failures: List[TransportError] = []
        self.last_provider: Optional[str] = None

    def canned_reply(self, language: str) -> str:
        """Uniformly random canned reply for the language."""
        table = self.config.canned_responses.get(language) or self.config.canned_responses[LANG_EN]
        return self._rng.choice(table)

    async def _call(self, provider: ReplyProvider, prompt: str) -> str:
        call = provider.complete(prompt, self.config.system_prompt)
        timeout = self.config.provider_timeout_sec
        try:
            if timeout is None:
                text = await call
            else:
                text = await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                provider.name, f"no reply within {timeout:.1f}s", category="timeout"
            ) from e
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(provider.name, str(e) or type(e).__name__) from e

        text = (text or "").strip()
        if not text:
            raise TransportError(provider.name, "empty reply", category="empty")
        return text

    async def generate(self, user_text: str) -> str:
        """
        Reply to the user's words. Never returns an empty string.

        Raises:
            ProviderExhaustedError: every provider failed and canned_fallback is off
        """
        language = detect_language(user_text)
        prompt = build_prompt(user_text, language)
        failures: List[TransportError] = []
        self.last_provider = None

        for provider in self.providers:
            if not provider.available:
                log.info("Skipping %s provider: not configured", provider.name)
                continue
            start = time.monotonic()
            try:
                text = await self._call(provider, prompt)
            except TransportError as e:
                log.warning(
                    "Generation provider %s failed (status=%s, %s): %s",
                    e.provider, e.status, e.category, e,
                )
                failures.append(e)
                continue

            log.info("Reply from %s in %.0fms", provider.name, (time.monotonic() - start) * 1000)
            self.last_failures = failures
            self.last_provider = provider.name
            return text

        self.last_failures = failures
        if not self.config.canned_fallback:
            raise ProviderExhaustedError("generation", failures)

        log.warning("All generation providers failed, using canned %s reply", language)
        self.last_provider = "canned"
        return self.canned_reply(language)

    async def aclose(self) -> None:
        for provider in self.providers:
            await provider.aclose()
