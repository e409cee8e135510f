# ens_assessment/llm_client.py

import asyncio
import concurrent.futures
import logging
import random
import time
import traceback
from typing import Any, Callable, Dict, List, TypeVar

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from ens_assessment.model_props import is_openai_model, parse_model_name

T = TypeVar("T")

logger = logging.getLogger("ens_assessment")


class MaxRetryErrorsException(Exception):
    pass


class ExternalCallTimeout(Exception):
    pass


# Shared pool for the external calls. A timed-out call keeps its worker
# until the provider returns; the caller is never blocked past `timeout`.
_EXTERNAL_CALL_POOL = concurrent.futures.ThreadPoolExecutor(
    max_workers=16,
    thread_name_prefix="ens-external-call",
)


def run_with_timeout(fn: Callable[[], T], timeout: float | None) -> T:
    if not timeout:
        return fn()
    future = _EXTERNAL_CALL_POOL.submit(fn)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as e:
        future.cancel()
        raise ExternalCallTimeout(f"External call timed out after {timeout:.1f}s") from e


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    timeout: float | None = None,
    backoff_seconds: float = 0.5,
    log: Callable[[str], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a sync external call with a per-attempt timeout and jittered
    exponential backoff between attempts.
    """
    last_exception: Exception | None = None

    def _is_timeout_error(e: Exception) -> bool:
        if isinstance(e, (asyncio.TimeoutError, ExternalCallTimeout, TimeoutError)):
            return True
        msg = repr(e)
        return "TimeoutError" in msg or "timed out" in msg.lower()

    def _is_resource_exhausted_error(e: Exception) -> bool:
        msg = str(e)
        return "429" in msg and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
        )

    for attempt in range(retries):
        start_time = time.time()
        try:
            return run_with_timeout(fn, timeout)
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            base = backoff_seconds * (2 ** attempt)
            if _is_resource_exhausted_error(e):
                base *= 4
            delay = random.uniform(base * 0.95, base * 1.35) if base > 0 else 0.0

            if _is_resource_exhausted_error(e) or _is_timeout_error(e):
                msg = f"Attempt {attempt+1}/{retries} got 429/timeout"
            else:
                msg = f"Attempt {attempt+1}/{retries} failed"

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e!r}")

            if attempt + 1 < retries and delay > 0:
                sleep(delay)

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class LlmClient:
    """
    Minimal wrapper for "completion-style" use:

        text = llm.invoke("some prompt")

    Under the hood:
    - Vertex: VertexAI.invoke(prompt)
    - OpenAI: Responses API (client.responses.create)

    The client makes exactly one HTTP attempt per invoke(); retries and
    timeouts belong to the caller's policy.
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self._openai_params: Dict[str, Any] = {}

        if self.provider == "vertex":
            from langchain_google_vertexai import VertexAI

            self._vertex = VertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
            )
            self._client = None
        else:
            from openai import OpenAI

            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def invoke(self, prompt: str) -> str:
        if self.provider == "vertex":
            resp = self._vertex.invoke(prompt)
            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=prompt,
            **self._openai_params,
        )
        return (getattr(resp, "output_text", "") or "").strip()


class ChatLlmClient(LlmClient):
    """
    Chat-style use:

        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), AIMessage(...)])
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self._openai_params = {}

        if self.provider == "vertex":
            from langchain_google_vertexai import ChatVertexAI

            self._vertex = ChatVertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
            )
            self._client = None
        else:
            from openai import OpenAI

            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _to_openai_messages(self, messages: List[HumanMessage | AIMessage | SystemMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "developer"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    def invoke(self, messages: List[HumanMessage | AIMessage | SystemMessage]) -> str:
        if self.provider == "vertex":
            resp = self._vertex.invoke(messages)
            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=self._to_openai_messages(messages),
            **self._openai_params,
        )
        return (getattr(resp, "output_text", "") or "").strip()


def build_llms_for_model(
    model_name: str,
    *,
    vertex_project: str,
    vertex_region: str,
    timeout: float | None = None,
):
    """
    Build (completion, chat) clients for the given model name.
    Falls back to None/None if creation fails (missing credentials, etc.).
    """
    try:
        llm = LlmClient(model_name, vertex_project=vertex_project, vertex_region=vertex_region, timeout=timeout)
        chat_llm = ChatLlmClient(model_name, vertex_project=vertex_project, vertex_region=vertex_region, timeout=timeout)
        return llm, chat_llm
    except Exception as e:
        logger.warning(f"Could not initialize LLM clients for {model_name}: {e}")
        logger.debug(traceback.format_exc())
        return None, None
