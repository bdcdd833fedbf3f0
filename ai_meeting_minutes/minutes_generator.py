"""
Minutes generation service using Ollama for summarizing meeting transcripts.
"""

import json
import logging
import re
from datetime import date
from typing import Optional

import requests
from pydantic import ValidationError

from .config import LLMConfig, config as app_config
from .error_handling import GenerationError, RecoveryAction
from .models import ActionItem, MeetingMinutes

logger = logging.getLogger(__name__)


class MinutesGenerator:
    """
    Turns a frozen transcript into structured ``MeetingMinutes``.

    Calls are blocking; the lifecycle controller runs them in a worker thread.
    """

    def __init__(self, llm_config: Optional[LLMConfig] = None):
        self.config = llm_config or app_config.llm
        self.model_name = self.config.model_name
        self.ollama_url = self.config.ollama_url.rstrip("/")
        self.temperature = self.config.temperature
        self.max_tokens = self.config.max_tokens
        self.timeout_seconds = self.config.timeout_seconds

    def generate_minutes(self, transcript: str) -> MeetingMinutes:
        """
        Generate structured meeting minutes from a transcript.

        Args:
            transcript: The frozen meeting transcript text

        Returns:
            MeetingMinutes: Structured minutes

        Raises:
            GenerationError: If the service fails or returns unusable output
        """
        if not transcript or not transcript.strip():
            raise ValueError("Transcript cannot be empty")

        prompt = self._create_prompt(transcript)
        response_text = self._call_ollama_api(prompt)
        return self._parse_response_to_minutes(response_text)

    def _create_prompt(self, transcript: str) -> str:
        """Create the minutes prompt for the LLM."""
        today = date.today().isoformat()

        return f"""You are an expert secretary. Based on the following meeting transcript, generate a formal Minutes of Meeting document.

TRANSCRIPT:
"{transcript}"

Use ISO 8601 format for the date if one is mentioned, otherwise use today's date ({today}).
Infer attendees if they are mentioned by name.

Return the result as a valid JSON object with exactly this structure:
{{
    "title": "string",
    "date": "string",
    "attendees": ["string"],
    "agenda": ["string"],
    "discussionPoints": ["string"],
    "decisions": ["string"],
    "actionItems": [
        {{
            "task": "string",
            "assignee": "string",
            "deadline": "string or null"
        }}
    ]
}}

Guidelines:
- Extract only information that is clearly present in the transcript
- Use empty lists for sections with no content rather than making assumptions
- Keep technical terms, names and numbers exactly as spoken

Respond with ONLY the JSON object, no additional text or formatting."""

    def _call_ollama_api(self, prompt: str) -> str:
        """Call the Ollama generate endpoint and return the raw response text."""
        payload = {
            "model": self.model_name,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            }
        }

        try:
            logger.debug(f"Calling Ollama API with model {self.model_name}")
            response = requests.post(
                f"{self.ollama_url}/api/generate",
                json=payload,
                timeout=self.timeout_seconds
            )
        except requests.exceptions.Timeout as e:
            raise GenerationError(
                "Ollama API request timed out",
                user_message=(
                    "Generating minutes timed out. The transcript may be too long or the "
                    "model is overloaded. Try again or use a smaller model."
                ),
                original_exception=e,
                recovery_actions=[RecoveryAction("retry", "Generate the minutes again", False)]
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise GenerationError(
                f"Cannot connect to Ollama service at {self.ollama_url}: {e}",
                user_message=(
                    f"Cannot reach the summarization service at {self.ollama_url}. "
                    "Please ensure Ollama is running and accessible."
                ),
                original_exception=e,
                recovery_actions=[RecoveryAction("manual", "Start Ollama with: ollama serve", False)]
            ) from e
        except requests.exceptions.RequestException as e:
            raise GenerationError(f"Network error connecting to Ollama: {e}", original_exception=e) from e

        if response.status_code == 404:
            raise GenerationError(
                f"Model '{self.model_name}' not found",
                user_message=(
                    f"Model '{self.model_name}' is not installed. Install it with: "
                    f"ollama pull {self.model_name}"
                ),
                recovery_actions=[RecoveryAction("manual", f"ollama pull {self.model_name}", False)]
            )
        if response.status_code == 503:
            raise GenerationError(
                "Ollama service unavailable",
                user_message="The summarization service is unavailable. Please check that Ollama is running."
            )
        if response.status_code != 200:
            try:
                error_detail = response.json().get("error", response.text)
            except ValueError:
                error_detail = response.text
            raise GenerationError(f"Ollama API error: {response.status_code} - {error_detail}")

        try:
            result = response.json()
        except ValueError as e:
            raise GenerationError(f"Invalid JSON response from Ollama: {e}", original_exception=e) from e

        response_text = result.get("response") if isinstance(result, dict) else None
        if not response_text or not response_text.strip():
            raise GenerationError(
                "No response from the summarization model",
                user_message="The summarization service returned an empty response. Please try again."
            )

        return response_text

    def _parse_response_to_minutes(self, response_text: str) -> MeetingMinutes:
        """Parse the LLM response into ``MeetingMinutes``."""
        # Extract JSON from response (in case there's extra text)
        json_match = re.search(r'\{.*\}', response_text, re.DOTALL)
        if not json_match:
            raise GenerationError(
                "No JSON object found in model response",
                user_message="The summarization service returned minutes in an unexpected format.",
                technical_details=response_text[:500]
            )

        try:
            data = json.loads(json_match.group(0))
        except json.JSONDecodeError as e:
            logger.debug(f"Response text: {response_text}")
            raise GenerationError(
                f"Invalid JSON in model response: {e}",
                user_message="The summarization service returned minutes in an unexpected format.",
                original_exception=e
            ) from e

        if not isinstance(data, dict):
            raise GenerationError(f"Expected a JSON object, got {type(data).__name__}")

        # Drop action items without a task instead of rejecting the whole document
        action_items = []
        for item in data.get("actionItems") or []:
            if isinstance(item, dict) and isinstance(item.get("task"), str) and item["task"].strip():
                action_items.append(ActionItem(
                    task=item["task"],
                    assignee=item.get("assignee") or "",
                    deadline=item.get("deadline") or None
                ))
        data["actionItems"] = action_items

        if not data.get("date"):
            data["date"] = date.today().isoformat()
        for key in ("attendees", "agenda", "discussionPoints", "decisions"):
            if data.get(key) is None:
                data[key] = []

        try:
            minutes = MeetingMinutes.model_validate(data)
        except ValidationError as e:
            logger.error(f"Failed to validate meeting minutes structure: {e}")
            raise GenerationError(
                f"Invalid meeting minutes structure: {e}",
                user_message="The summarization service returned incomplete minutes.",
                original_exception=e
            ) from e

        logger.info(
            f"Generated minutes '{minutes.title}': {len(minutes.decisions)} decisions, "
            f"{len(minutes.action_items)} action items"
        )
        return minutes

    def check_ollama_available(self) -> bool:
        """Check whether the Ollama service is reachable and the model installed."""
        try:
            response = requests.get(f"{self.ollama_url}/api/tags", timeout=5)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Ollama not reachable at {self.ollama_url}: {e}")
            return False

        if response.status_code != 200:
            return False

        models = [model.get("name", "") for model in response.json().get("models", [])]
        available = any(name == self.model_name or name.startswith(f"{self.model_name}:") for name in models)
        if not available:
            logger.warning(f"Model '{self.model_name}' not found in Ollama (installed: {models})")
        return available
