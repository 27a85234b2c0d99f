"""Model provider backends: Ollama over HTTP, llama.cpp and Hugging Face transformers."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence

import requests

from spanextract.ai.progress import ProgressSink, RetryAttempt, emit
from spanextract.ai.types import ScoredOutput
from spanextract.exceptions import ConfigurationError, ModelCallError
from spanextract.logging_config import get_logger

logger = get_logger(__name__)

_BACKEND_ALIASES = {
    "llama.cpp": "llama_cpp",
    "llama-cpp": "llama_cpp",
    "llamacpp": "llama_cpp",
    "hf": "transformers",
    "huggingface": "transformers",
}


def normalize_backend_name(name: str) -> str:
    name = (name or "").strip().lower()
    return _BACKEND_ALIASES.get(name, name)


try:
    from llama_cpp import Llama
    LLAMA_CPP_AVAILABLE = True
except ImportError:  # pragma: no cover
    LLAMA_CPP_AVAILABLE = False
    Llama = None

try:
    import torch
    from transformers import AutoModelForCausalLM, AutoTokenizer
    TRANSFORMERS_AVAILABLE = True
except ImportError:  # pragma: no cover
    torch = None
    AutoModelForCausalLM = AutoTokenizer = None
    TRANSFORMERS_AVAILABLE = False


class LLMBackendBase:
    """
    Synchronous text generation backend.

    ``infer`` takes a batch of prompts and returns, per prompt, a list of
    scored completions. Subclasses usually implement only ``generate``.
    """

    provider_name = "base"

    def __init__(self, config, progress: Optional[ProgressSink] = None):
        self.config = config
        self.progress = progress
        self.model_id = getattr(config, "model_id", "unknown")

    def generate(self, prompt: str, *, temperature: Optional[float] = None,
                 max_completion_tokens: Optional[int] = None, stop: Optional[List[str]] = None) -> str:
        raise NotImplementedError

    def infer(self, prompts: Sequence[str], **params: Any) -> List[List[ScoredOutput]]:
        outputs: List[List[ScoredOutput]] = []
        for prompt in prompts:
            try:
                text = self.generate(prompt, **params)
            except ModelCallError:
                raise
            except Exception as exc:
                raise ModelCallError(
                    f"{self.provider_name} generation failed: {exc}",
                    model_id=self.model_id,
                    provider=self.provider_name,
                ) from exc
            outputs.append([ScoredOutput(output=text, score=1.0)])
        return outputs


class OllamaBackend(LLMBackendBase):
    """Ollama HTTP backend with retries and linear backoff."""

    provider_name = "ollama"

    def __init__(self, config, progress: Optional[ProgressSink] = None, session: Optional[requests.Session] = None):
        super().__init__(config, progress)
        llm_config = config.get_llm_config()
        self.base_url = llm_config["model_url"].rstrip("/")
        self.timeout = llm_config["request_timeout"]
        self.max_retries = max(0, int(llm_config["max_retries"]))
        self.retry_delay = float(llm_config["retry_delay"])
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/api/generate"

    def _payload(self, prompt: str, temperature: Optional[float], max_completion_tokens: Optional[int],
                 stop: Optional[List[str]]) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_completion_tokens is not None:
            options["num_predict"] = max_completion_tokens
        if stop:
            options["stop"] = list(stop)
        return {"model": self.model_id, "prompt": prompt, "stream": False, "options": options}

    def generate(self, prompt: str, *, temperature: Optional[float] = None,
                 max_completion_tokens: Optional[int] = None, stop: Optional[List[str]] = None) -> str:
        payload = self._payload(prompt, temperature, max_completion_tokens, stop)
        attempts = self.max_retries + 1
        last_error: Optional[str] = None
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                else:
                    response.raise_for_status()
                    return response.json().get("response", "")
            except requests.HTTPError as exc:
                raise ModelCallError(
                    f"Ollama rejected the request: {exc}",
                    model_id=self.model_id,
                    provider=self.provider_name,
                ) from exc
            except (requests.RequestException, ValueError) as exc:
                last_error = str(exc)

            if attempt < attempts:
                delay = self.retry_delay * attempt
                logger.warning(
                    "Ollama call failed (%s); retry %d/%d in %.1fs", last_error, attempt, self.max_retries, delay
                )
                emit(self.progress, RetryAttempt("ollama generate", attempt, self.max_retries, delay))
                time.sleep(delay)

        raise ModelCallError(
            f"Ollama call failed after {attempts} attempt(s): {last_error}",
            model_id=self.model_id,
            provider=self.provider_name,
        )


class LlamaCppBackend(LLMBackendBase):
    """llama-cpp-python backend."""

    provider_name = "llama_cpp"

    def __init__(self, config, progress: Optional[ProgressSink] = None):
        super().__init__(config, progress)
        if not LLAMA_CPP_AVAILABLE:
            raise ConfigurationError("llama-cpp-python is not installed.", field="llm_backend", value="llama_cpp")
        llm_config = config.get_llm_config()
        params = {
            "model_path": llm_config["model_path"],
            "n_ctx": llm_config["n_ctx"],
            "n_threads": llm_config["n_threads"],
            "n_gpu_layers": llm_config["n_gpu_layers"],
            "verbose": False,
        }
        self.model_id = llm_config["model_path"]
        self._model = Llama(**params)
        logger.info("Loaded llama.cpp backend with model %s", params["model_path"])

    def generate(self, prompt: str, *, temperature: Optional[float] = None,
                 max_completion_tokens: Optional[int] = None, stop: Optional[List[str]] = None) -> str:
        params: Dict[str, Any] = {}
        if temperature is not None:
            params["temperature"] = temperature
        if max_completion_tokens is not None:
            params["max_tokens"] = max_completion_tokens
        response = self._model(prompt, stop=stop or [], **params)
        return response["choices"][0]["text"]


class TransformersBackend(LLMBackendBase):
    """Hugging Face transformers backend."""

    provider_name = "transformers"

    def __init__(self, config, progress: Optional[ProgressSink] = None):
        super().__init__(config, progress)
        if not TRANSFORMERS_AVAILABLE:
            raise ConfigurationError("transformers is not installed.", field="llm_backend", value="transformers")

        llm_config = config.get_llm_config()
        self.model_id = llm_config["hf_model_id"]
        self.device = self._resolve_device(llm_config)
        self.tokenizer = AutoTokenizer.from_pretrained(self.model_id, use_fast=True)
        self.model = AutoModelForCausalLM.from_pretrained(
            self.model_id,
            trust_remote_code=True,
            low_cpu_mem_usage=True,
        )
        self.model.to(self.device)
        self.model.eval()
        logger.info("Loaded transformers backend: %s on %s", self.model_id, self.device)

    def _resolve_device(self, llm_config) -> str:
        if torch is None:
            return "cpu"
        if not llm_config.get("enable_gpu", True):
            return "cpu"
        if torch.cuda.is_available():
            return "cuda"
        if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    def generate(self, prompt: str, *, temperature: Optional[float] = None,
                 max_completion_tokens: Optional[int] = None, stop: Optional[List[str]] = None) -> str:
        inputs = self.tokenizer(prompt, return_tensors="pt").to(self.model.device)
        params: Dict[str, Any] = {"max_new_tokens": max_completion_tokens or 512}
        if temperature:
            params.update(temperature=temperature, do_sample=True)
        output = self.model.generate(**inputs, **params)
        text = self.tokenizer.decode(output[0][inputs.input_ids.shape[1]:], skip_special_tokens=True)
        if stop:
            for token in stop:
                idx = text.find(token)
                if idx != -1:
                    text = text[:idx]
        return text


def build_backend(config, backend_name: Optional[str] = None,
                  progress: Optional[ProgressSink] = None) -> LLMBackendBase:
    backend = normalize_backend_name(backend_name or getattr(config, "llm_backend", "ollama"))
    if backend == "ollama":
        return OllamaBackend(config, progress)
    if backend == "llama_cpp":
        return LlamaCppBackend(config, progress)
    if backend == "transformers":
        return TransformersBackend(config, progress)
    raise ConfigurationError(f"Unsupported backend '{backend}'", field="llm_backend", value=backend)


__all__ = [
    "LLAMA_CPP_AVAILABLE",
    "LLMBackendBase",
    "LlamaCppBackend",
    "OllamaBackend",
    "TRANSFORMERS_AVAILABLE",
    "TransformersBackend",
    "build_backend",
    "normalize_backend_name",
]
