"""
Judge0 execution API client

Two tiers: the keyed RapidAPI endpoint when RAPIDAPI_KEY is set, then the
public unauthenticated instance (submit, then poll by token). Source, stdin
and all outputs travel base64 encoded.
"""
import asyncio
import base64
import logging
from typing import Optional

import aiohttp

from . import config
from .errors import ExternalServiceFailure, UnsupportedLanguage

logger = logging.getLogger("codecollab")

LANGUAGE_IDS = {
    "javascript": 63,
    "python": 71,
    "cpp": 76,
    "c": 75,
    "java": 62,
    "csharp": 51,
    "go": 60,
    "rust": 73,
    "typescript": 74,
}

ALIASES = {
    "js": "javascript",
    "node": "javascript",
    "python3": "python",
    "py": "python",
    "c++": "cpp",
    "c#": "csharp",
    "ts": "typescript",
}

# Judge0 status id -> normalized status
STATUSES = {
    1: "processing",
    2: "processing",
    3: "success",
    4: "wrong_answer",
    5: "time_limit_exceeded",
    6: "compilation_error",
    7: "runtime_error",
    8: "runtime_error",
    9: "runtime_error",
    10: "runtime_error",
    11: "runtime_error",
    12: "runtime_error",
    13: "internal_error",
    14: "exec_format_error",
}


def normalize_language(language: Optional[str]) -> Optional[str]:
    if not language:
        return None
    key = language.strip().lower()
    key = ALIASES.get(key, key)
    return key if key in LANGUAGE_IDS else None


def language_id(language: Optional[str]) -> int:
    key = normalize_language(language)
    if key is None:
        raise UnsupportedLanguage(str(language), LANGUAGE_IDS)
    return LANGUAGE_IDS[key]


def b64encode(text: Optional[str]) -> str:
    return base64.b64encode((text or "").encode("utf-8")).decode("ascii")


def b64decode(text: Optional[str]) -> str:
    if not text:
        return ""
    try:
        return base64.b64decode(text).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return text


def process_result(raw: dict) -> dict:
    """Standardize a Judge0 submission into the shape relayed to clients"""
    status = raw.get("status") or {}
    status_id = status.get("id", 0)
    normalized = STATUSES.get(status_id, "unknown")
    success = normalized == "success"
    exit_code = raw.get("exit_code")
    if exit_code is None:
        exit_code = 0 if success else 1
    try:
        elapsed = float(raw.get("time") or 0)
    except (TypeError, ValueError):
        elapsed = 0.0
    return {
        "success": success,
        "status": normalized,
        "statusDescription": status.get("description", "Unknown"),
        "stdout": b64decode(raw.get("stdout")),
        "stderr": b64decode(raw.get("stderr")),
        "compileOutput": b64decode(raw.get("compile_output")),
        "exitCode": exit_code,
        "time": elapsed,
        "memory": int(raw.get("memory") or 0),
    }


class Judge0Client:
    def __init__(self, api_url: str = config.JUDGE0_API_URL,
                 public_url: str = config.JUDGE0_PUBLIC_URL,
                 api_key: str = config.RAPIDAPI_KEY,
                 timeout: float = config.JUDGE0_TIMEOUT,
                 poll_interval: float = 1.0, max_polls: int = 20):
        self.api_url = api_url.rstrip("/")
        self.public_url = public_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._session: Optional[aiohttp.ClientSession] = None

    async def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def execute(self, language: str, code: str, stdin: str = "") -> dict:
        """Run ``code`` to completion and return the processed result"""
        submission = {
            "language_id": language_id(language),
            "source_code": b64encode(code),
            "stdin": b64encode(stdin),
        }

        if self.api_key:
            try:
                return process_result(await self._submit_keyed(submission))
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, ExternalServiceFailure) as e:
                logger.warning(f"Keyed Judge0 endpoint failed, trying public instance: {e}")

        try:
            return process_result(await self._submit_public(submission))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, ExternalServiceFailure) as e:
            logger.error(f"Public Judge0 instance failed: {e}")
            raise ExternalServiceFailure(f"Code execution failed: {e}")

    async def _submit_keyed(self, submission: dict) -> dict:
        host = self.api_url.split("://", 1)[-1]
        headers = {"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": host}
        http = await self._http()
        async with http.post(
            f"{self.api_url}/submissions",
            params={"base64_encoded": "true", "wait": "true"},
            json=submission,
            headers=headers,
        ) as resp:
            if resp.status >= 300:
                raise ExternalServiceFailure(f"Judge0 responded {resp.status}")
            return await resp.json()

    async def _submit_public(self, submission: dict) -> dict:
        http = await self._http()
        async with http.post(
            f"{self.public_url}/submissions",
            params={"base64_encoded": "true", "wait": "false"},
            json=submission,
        ) as resp:
            if resp.status >= 300:
                raise ExternalServiceFailure(f"Judge0 responded {resp.status}")
            created = await resp.json()

        # Some instances answer synchronously
        if (created.get("status") or {}).get("id", 0) > 2:
            return created
        token = created.get("token")
        if not token:
            raise ExternalServiceFailure("Judge0 returned no submission token")
        return await self._poll(token)

    async def _poll(self, token: str) -> dict:
        http = await self._http()
        for _ in range(self.max_polls):
            async with http.get(
                f"{self.public_url}/submissions/{token}",
                params={"base64_encoded": "true"},
            ) as resp:
                if resp.status >= 300:
                    raise ExternalServiceFailure(f"Judge0 poll responded {resp.status}")
                result = await resp.json()
            if (result.get("status") or {}).get("id", 0) > 2:
                return result
            await asyncio.sleep(self.poll_interval)
        raise ExternalServiceFailure("Execution timeout - result polling exceeded maximum attempts")
