import io
import json
import logging
import os
import re
import tokenize
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from dotenv import load_dotenv

from src.agents.prompts import (
    GENERATE_SYSTEM_PROMPT,
    GENERATE_USER_TEMPLATE,
    REPAIR_SYSTEM_PROMPT,
    REPAIR_USER_TEMPLATE,
)
from src.utils.generator_llm import (
    DEFAULT_GEN_MODEL,
    DEFAULT_REPAIR_MODEL,
    init_generator_llm,
    openai_model_chain,
)
from src.utils.llm_fallback import call_chat_with_fallback
from src.utils.models import (
    CONFIDENCE_LEVELS,
    ENTRY_FUNCTION,
    PipelineError,
    ParameterSpec,
    TransformationUnit,
)
from src.utils.prompting import render_prompt
from src.utils.retries import call_with_retries, is_transient_error_like
from src.utils.run_context import RunContext
from src.utils.schema_summary import summarize_schema
from src.utils.static_safety_scan import scan_code_safety

load_dotenv()

logger = logging.getLogger(__name__)

LLM_TIMEOUT_S = float(os.getenv("TRANSFORM_LLM_TIMEOUT_S", "60"))
_WAIT_SLICE_S = 0.1


def _clean_json(text: str) -> str:
    text = re.sub(r"```json", "", text or "")
    text = re.sub(r"```", "", text)
    return text.strip()


def _clean_code(code: str) -> str:
    code = re.sub(r"```python", "", code or "")
    code = re.sub(r"```", "", code)
    return code.strip()


def _name_tokens(code: str) -> Set[str]:
    try:
        return {
            tok.string
            for tok in tokenize.generate_tokens(io.StringIO(code).readline)
            if tok.type == tokenize.NAME
        }
    except (tokenize.TokenError, IndentationError, SyntaxError):
        return set(re.findall(r"[A-Za-z_][A-Za-z0-9_]*", code))


def _normalize_parameters(raw: Any, code: str) -> List[ParameterSpec]:
    """
    Keeps parameters whose name is unique and appears in the code as a name
    token. Anything else the model declared is dropped.
    """
    if not isinstance(raw, list):
        return []
    referenced = _name_tokens(code)
    seen: Set[str] = set()
    params: List[ParameterSpec] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        spec = ParameterSpec.from_dict(item)
        if not spec.name or not spec.name.isidentifier():
            continue
        if spec.name in seen or spec.name not in referenced:
            continue
        seen.add(spec.name)
        params.append(spec)
    return params


def _check_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValueError("EMPTY_COMPLETION")
    # CRITICAL CHECK FOR SERVER ERRORS (HTML/504)
    if "504 Gateway Time-out" in content or "<html" in content.lower():
        raise ConnectionError("LLM Server Timeout (504 Received)")
    return content


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, PipelineError):
        return False
    return isinstance(exc, ConnectionError) or is_transient_error_like(str(exc))


class CodeGeneratorAgent:
    """
    Turns a plain-language instruction into a TransformationUnit and repairs
    units that failed in the sandbox.

    Remote failures never escape: the agent returns a comment-only stub unit
    with low confidence instead. Only cancellation or an expired run deadline
    (PipelineError) propagates, so the pipeline can stop the run.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        provider: Optional[str] = None,
        client: Any = None,
        gen_model: Optional[str] = None,
        repair_model: Optional[str] = None,
        model_chain: Optional[Sequence[str]] = None,
        timeout_s: Optional[float] = None,
        max_retries: int = 3,
        retry_delay_s: float = 1.0,
    ):
        if client is not None:
            self.provider = (provider or "openai").lower()
            self.client = client
            self.init_warning = None
        else:
            self.provider, self.client, self.init_warning = init_generator_llm(api_key=api_key, provider=provider)
            if self.init_warning:
                print(f"WARNING: {self.init_warning}")

        self.gen_model = gen_model or os.getenv("TRANSFORM_GEN_MODEL", DEFAULT_GEN_MODEL)
        self.repair_model = repair_model or os.getenv("TRANSFORM_REPAIR_MODEL", DEFAULT_REPAIR_MODEL)
        self.model_chain = list(model_chain) if model_chain else openai_model_chain()
        self.timeout_s = timeout_s or LLM_TIMEOUT_S
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.last_model_used: Optional[str] = None

    def generate(
        self,
        instruction: str,
        schema: Iterable[Any],
        sample: Optional[Sequence[Dict[str, Any]]] = None,
        context: Optional[RunContext] = None,
    ) -> TransformationUnit:
        columns = list(schema or [])
        if not (instruction or "").strip():
            return self._stub("generating code", "Instruction must not be empty")
        if not columns:
            return self._stub("generating code", "Dataset schema must list at least one column")

        user_prompt = render_prompt(
            GENERATE_USER_TEMPLATE,
            schema_summary=summarize_schema(columns, sample),
            instruction=instruction.strip(),
        )
        return self._produce_unit(
            "generating code", GENERATE_SYSTEM_PROMPT, user_prompt, self.gen_model, context
        )

    def repair(
        self,
        prior_source: str,
        error_message: str,
        schema: Iterable[Any],
        context: Optional[RunContext] = None,
    ) -> TransformationUnit:
        columns = list(schema or [])
        if not columns:
            return self._stub("repairing code", "Dataset schema must list at least one column")

        user_prompt = render_prompt(
            REPAIR_USER_TEMPLATE,
            schema_summary=summarize_schema(columns, None),
            prior_source=prior_source or "(empty)",
            error_message=error_message or "(no error message)",
        )
        return self._produce_unit(
            "repairing code", REPAIR_SYSTEM_PROMPT, user_prompt, self.repair_model, context
        )

    def _produce_unit(
        self,
        label: str,
        system_prompt: str,
        user_prompt: str,
        model_name: str,
        context: Optional[RunContext],
    ) -> TransformationUnit:
        if self.provider == "none" or self.client is None:
            return self._stub(label, self.init_warning or "No LLM provider configured")

        def _call_model() -> str:
            if context is not None:
                context.check(label)
            if self.provider == "gemini":
                return self._call_gemini(system_prompt, user_prompt, model_name)
            return self._call_openai(system_prompt, user_prompt)

        try:
            content = self._await(
                lambda: call_with_retries(
                    _call_model,
                    max_retries=self.max_retries,
                    backoff_factor=2,
                    initial_delay=self.retry_delay_s,
                    should_retry=_is_retryable,
                ),
                context,
                label,
            )
            print("DEBUG: Code generator response received.")
            return self._parse_unit(content)
        except PipelineError:
            raise
        except Exception as e:
            error_msg = f"Code Generator Failed: {str(e)}"
            print(f"CRITICAL: {error_msg}")
            return self._stub(label, str(e))

    def _await(self, fn: Callable[[], str], context: Optional[RunContext], label: str) -> str:
        """
        Runs fn on a worker thread and waits in short slices so a cancel or
        an expired deadline stops the wait. The abandoned request ends on its
        own request timeout.
        """
        if context is None:
            return fn()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codegen")
        try:
            future = executor.submit(fn)
            while True:
                context.check(label)
                try:
                    return future.result(timeout=_WAIT_SLICE_S)
                except FutureTimeout:
                    continue
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _call_gemini(self, system_prompt: str, user_prompt: str, model_name: str) -> str:
        from google.generativeai.types import HarmBlockThreshold, HarmCategory

        print(f"DEBUG: Code generator calling Gemini Model ({model_name})...")
        model = self.client.GenerativeModel(
            model_name=model_name,
            system_instruction=system_prompt,
            generation_config={
                "temperature": 0.2,
                "top_p": 0.9,
                "max_output_tokens": 8192,
                "response_mime_type": "application/json",
            },
            safety_settings={
                HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_NONE,
                HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_NONE,
                HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_NONE,
                HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_NONE,
            },
        )
        response = model.generate_content(user_prompt, request_options={"timeout": self.timeout_s})
        self.last_model_used = model_name
        return _check_content(response.text)

    def _call_openai(self, system_prompt: str, user_prompt: str) -> str:
        print(f"DEBUG: Code generator calling OpenAI-compatible chain {self.model_chain}...")
        response, model_used = call_chat_with_fallback(
            self.client,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            self.model_chain,
            call_kwargs={
                "temperature": 0.1,
                "response_format": {"type": "json_object"},
                "timeout": self.timeout_s,
            },
            logger=logger,
            context_tag="code_generator",
        )
        self.last_model_used = model_used
        return _check_content(response.choices[0].message.content)

    def _parse_unit(self, content: str) -> TransformationUnit:
        try:
            payload = json.loads(_clean_json(content))
        except ValueError as e:
            raise ValueError(f"Model returned malformed JSON: {e}")
        if not isinstance(payload, dict):
            raise ValueError("Model response is not a JSON object")
        if "error" in payload and "code" not in payload:
            raise ConnectionError(f"API Error Detected (JSON): {str(payload.get('error'))[:200]}")

        code = payload.get("code")
        if not isinstance(code, str) or not _clean_code(code):
            raise ValueError("Model response has no code")
        code = _clean_code(code)

        confidence = str(payload.get("confidence") or "low").strip().lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = "low"
        explanation = str(payload.get("explanation") or "").strip()
        params = _normalize_parameters(payload.get("parameters"), code)

        notes = []
        if not re.search(rf"^\s*def\s+{ENTRY_FUNCTION}\s*\(", code, flags=re.MULTILINE):
            notes.append(f"Code does not define {ENTRY_FUNCTION}(df).")
        is_safe, violations = scan_code_safety(code)
        if not is_safe:
            print(f"CRITICAL: Security Check Failed. Violations: {violations}")
            notes.append("Safety scan: " + "; ".join(violations))
        if notes:
            confidence = "low"
            explanation = " ".join([explanation] + notes).strip()

        return TransformationUnit(
            source=code,
            declared_parameters=tuple(params),
            confidence=confidence,
            explanation=explanation,
        )

    def _stub(self, label: str, error: str) -> TransformationUnit:
        flat = " ".join(str(error).split())
        return TransformationUnit(
            source=f"# Error {label}: {flat}",
            confidence="low",
            explanation=f"Failed {label} due to an error: {flat}",
            generation_failed=True,
        )
