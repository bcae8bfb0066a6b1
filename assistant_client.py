"""
assistant_client.py

Hugging Face text-generation helper for the transparency platform.

Provides:
- get_client()                        -> InferenceClient or None when no key is set
- generate_reply(prompt)              -> assistant answer for the public chatbot
- structure_records(raw_text, fields) -> list of dicts pulled out of free text (PDF uploads)

Every failure of the remote call is raised as UpstreamError; nothing is retried.
"""

import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from huggingface_hub import InferenceClient

from errors import AssistantUnavailableError, UpstreamError

load_dotenv()

logger = logging.getLogger(__name__)

AI_API_KEY = os.getenv("AI_API_KEY")
AI_MODEL_ID = os.getenv("AI_MODEL_ID", "Qwen/Qwen2.5-7B-Instruct-1M")

ASSISTANT_SYSTEM_PROMPT = (
    "You are a financial transparency assistant for a public institution. "
    "Answer ONLY from the transaction history and conversation you are given. "
    "If the data does not contain the answer, say so plainly. "
    "Quote amounts with two decimals and never invent departments or vendors."
)

STRUCTURE_SYSTEM_PROMPT = (
    "You are an expert financial data entry system. "
    "You turn raw report text into a JSON array of transaction objects and "
    "return nothing but that JSON array, without markdown formatting."
)


# ---------------------------------------------------------------------------
# Client factory
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_client() -> Optional[InferenceClient]:
    if not AI_API_KEY:
        logger.warning("AI_API_KEY is not set; assistant features are disabled")
        return None
    return InferenceClient(model=AI_MODEL_ID, token=AI_API_KEY)


def _chat(messages: List[Dict[str, str]], max_tokens: int, temperature: float) -> str:
    client = get_client()
    if client is None:
        raise AssistantUnavailableError()
    try:
        response = client.chat_completion(
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        content = response.choices[0].message.content or ""
    except Exception:
        logger.exception("Text generation call failed")
        raise UpstreamError()
    content = content.strip()
    if not content:
        raise UpstreamError()
    return content


# ---------------------------------------------------------------------------
# Core helpers
# ---------------------------------------------------------------------------

def generate_reply(prompt: str) -> str:
    """Answer the latest chatbot question; `prompt` already holds the context."""
    return _chat(
        [
            {"role": "system", "content": ASSISTANT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        max_tokens=800,
        temperature=0.3,
    )


def extract_json_array(text: str) -> List[Any]:
    """
    Pull the JSON payload out of a model reply that may be wrapped in prose or
    code fences. A single object is returned as a one-item list.
    """
    starts = [i for i in (text.find("["), text.find("{")) if i != -1]
    end = max(text.rfind("]"), text.rfind("}"))
    if not starts or end == -1:
        raise ValueError("No JSON array or object found in the response.")
    parsed = json.loads(text[min(starts):end + 1])
    if isinstance(parsed, dict):
        return [parsed]
    if not isinstance(parsed, list):
        raise ValueError("Expected a JSON array of records.")
    return parsed


def structure_records(raw_text: str, fields: Dict[str, str]) -> List[Dict[str, Any]]:
    """
    Ask the model to list every transaction found in `raw_text`.

    fields maps each output key to a short instruction, e.g.
    {"amount": "required, as a number only"}.
    """
    field_lines = "\n".join(f"- {name} ({hint})" for name, hint in fields.items())
    prompt = f"""Analyze the following raw text and identify all individual financial transactions.

For each transaction extract:
{field_lines}

Return the final output as a single, valid JSON array of objects.

Here is the raw text to analyze:
---
{raw_text}
---
"""
    reply = _chat(
        [
            {"role": "system", "content": STRUCTURE_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        max_tokens=2048,
        temperature=0.1,
    )
    try:
        records = extract_json_array(reply)
    except ValueError:
        logger.error("Could not parse structured records from model reply: %.200s", reply)
        raise UpstreamError("The AI model returned an invalid data structure.")
    return [r for r in records if isinstance(r, dict)]
