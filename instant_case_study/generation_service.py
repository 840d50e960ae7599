import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from openai import APIError, OpenAI

from instant_case_study.schemas import CaseStudyCreate, CaseStudyRecord, UserRecord

logger = logging.getLogger("instant_case_study.generation")

FREE_GENERATION_LIMIT = 3
DEFAULT_MODEL = "gpt-4o"
DEFAULT_PUBLIC_URL = "https://your-app-url.com"


class GenerationLimitReachedError(Exception):
    pass


class CaseStudyGenerationError(Exception):
    pass


def _json_log(fields) -> str:
    return json.dumps(fields, separators=(",", ":"), default=str)


def is_pro(user: UserRecord) -> bool:
    return bool(user.is_pro)


def generation_count(user: UserRecord) -> int:
    return user.generation_count or 0


def remaining_generations(user: UserRecord) -> Optional[int]:
    if is_pro(user):
        return None
    return max(0, FREE_GENERATION_LIMIT - generation_count(user))


def ensure_generation_allowed(user: UserRecord):
    if not is_pro(user) and generation_count(user) >= FREE_GENERATION_LIMIT:
        raise GenerationLimitReachedError("Generation limit reached. Please upgrade to Pro.")


def build_case_study_prompt(request: CaseStudyCreate) -> str:
    lines = [
        "You are a professional case study copywriter. Write a persuasive and well-structured "
        "case study using the following inputs:",
        f"- Client Type: {request.client_type}",
        f"- Challenge: {request.challenge}",
        f"- Solution: {request.solution}",
        f"- Result: {request.result}",
    ]
    if request.client_quote:
        lines.append(f'- Client Quote: "{request.client_quote}"')
    lines.extend(
        [
            "",
            f"Use a {request.tone} tone and write for the {request.industry} industry.",
            "",
            "Structure it like this:",
            "1. Headline that summarizes the result",
            "2. Intro paragraph",
            "3. Challenge → Solution → Result narrative (2–3 paragraphs)",
            "4. Include the client quote in a blockquote if provided",
            "5. End with a short Call to Action",
            "",
            "Output should be 250–350 words.",
        ]
    )
    return "\n".join(lines)


def build_social_post_prompt(case_study: str, public_url: str) -> str:
    return (
        "You are a copywriter crafting a short, engaging social media post based on the following "
        "case study. Summarize the key challenge, solution, and result in a persuasive, casual tone "
        "suitable for LinkedIn or Twitter. Keep it under 280 characters. End with:\n"
        f"'Here's the full case study 👉 {public_url}'\n\n"
        f"Case Study:\n{case_study}"
    )


class CaseStudyGenerator(ABC):
    @abstractmethod
    def complete(self, prompt: str, max_tokens: int) -> str:
        raise NotImplementedError


class DisabledCaseStudyGenerator(CaseStudyGenerator):
    def complete(self, prompt: str, max_tokens: int) -> str:
        del prompt, max_tokens
        raise CaseStudyGenerationError("OPENAI_API_KEY is required to generate case studies")


class OpenAICaseStudyGenerator(CaseStudyGenerator):
    def __init__(self, api_key: str, model: str = DEFAULT_MODEL, temperature: float = 0.7):
        self._client = OpenAI(api_key=api_key)
        self._model = model
        self._temperature = temperature

    def complete(self, prompt: str, max_tokens: int) -> str:
        try:
            completion = self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=self._temperature,
            )
        except APIError as exc:
            raise CaseStudyGenerationError(f"OpenAI API error: {exc}") from exc
        if not completion.choices:
            return ""
        return (completion.choices[0].message.content or "").strip()


def get_case_study_generator() -> CaseStudyGenerator:
    api_key = (os.environ.get("OPENAI_API_KEY") or "").strip()
    if not api_key:
        return DisabledCaseStudyGenerator()
    model = (os.environ.get("OPENAI_MODEL") or "").strip() or DEFAULT_MODEL
    return OpenAICaseStudyGenerator(api_key=api_key, model=model)


def public_url() -> str:
    return (os.environ.get("APP_PUBLIC_URL") or "").strip() or DEFAULT_PUBLIC_URL


def generate_case_study(request: CaseStudyCreate, generator: CaseStudyGenerator):
    """Return (case_study, social_media_text).

    An empty case study is an error; an empty social post is only logged.
    """
    case_study = generator.complete(build_case_study_prompt(request), max_tokens=500)
    if not case_study:
        raise CaseStudyGenerationError("Failed to generate case study")

    social_media_text = generator.complete(build_social_post_prompt(case_study, public_url()), max_tokens=150)
    if not social_media_text:
        logger.warning(_json_log({"event": "generation.social_post.empty"}))
    return case_study, social_media_text


def new_case_study_record(
    user_id: str,
    request: CaseStudyCreate,
    case_study: str,
    social_media_text: str,
) -> CaseStudyRecord:
    return CaseStudyRecord(
        id=str(uuid4()),
        user_id=user_id,
        client_type=request.client_type,
        challenge=request.challenge,
        solution=request.solution,
        result=request.result,
        tone=request.tone,
        industry=request.industry,
        client_quote=request.client_quote,
        ai_output=case_study,
        social_media_text=social_media_text,
        created_at=datetime.now(timezone.utc),
    )
