"""AI judge: scores enriched profiles against organization qualification rubrics."""

import asyncio
import json
import logging
import math
import sqlite3
from typing import Any

from leadpipe.core.config import ScoringConfig
from leadpipe.core.db import get_enrichment, upsert_qualification_result
from leadpipe.core.errors import ConfigurationError, JudgeResponseError
from leadpipe.core.schemas import (
    FanOutResult,
    QualificationCriteria,
    QualificationRubric,
    ScoringResult,
)
from leadpipe.llm.base import LLMProvider

logger = logging.getLogger(__name__)

_ABOUT_LIMIT = 500

JUDGE_SYSTEM_PROMPT = (
    "You are an expert recruiter evaluating LinkedIn profiles against job "
    "qualification criteria.\n"
    "Your task is to score how well a candidate matches the requirements on a "
    "scale of 0-100.\n\n"
    "Scoring guidelines:\n"
    "- 90-100: Exceptional match, exceeds all requirements\n"
    "- 70-89: Strong match, meets most requirements\n"
    "- 50-69: Moderate match, meets some requirements\n"
    "- 30-49: Weak match, meets few requirements\n"
    "- 0-29: Poor match, does not meet requirements\n\n"
    "IMPORTANT: Be flexible and make reasonable inferences when data is missing.\n"
    "- If experience years aren't explicit, infer from job history, seniority of "
    "roles, or career progression\n"
    "- A senior title or founder role implies significant experience\n"
    "- High follower counts suggest industry influence and experience\n"
    "- Don't penalize candidates for incomplete LinkedIn profiles - judge based "
    "on available evidence\n"
    "- When in doubt, give the benefit of the doubt to candidates with strong "
    "signals\n\n"
    "You must respond in valid JSON format with exactly these fields:\n"
    "{\n"
    '  "score": <number 0-100>,\n'
    '  "reasoning": "<brief explanation of score>",\n'
    '  "passed": <true if score >= 70, false otherwise>\n'
    "}"
)


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


def _fmt_count(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "Unknown"
    return f"{int(value):,}"


def _dicts(value: Any, limit: int | None = None) -> list[dict[str, Any]]:
    items = [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []
    return items[:limit] if limit is not None else items


def _date_range(entry: dict[str, Any]) -> str:
    start = entry.get("start_date")
    if not start:
        return ""
    return f"({start} - {entry.get('end_date') or 'Present'})"


def _join(*parts: str) -> str:
    return " ".join(p for p in parts if p)


def _build_profile_summary(payload: dict[str, Any]) -> str:
    """Render a vendor payload as the markdown block the judge reads."""
    name = payload.get("name") or _join(
        str(payload.get("first_name") or ""), str(payload.get("last_name") or "")
    )
    connections = payload.get("connections", payload.get("connection_count"))
    followers = payload.get("followers", payload.get("follower_count"))

    lines = [
        f"**Name:** {name or 'Unknown'}",
        f"**Headline:** {payload.get('headline') or 'Not specified'}",
        f"**Location:** {payload.get('location') or 'Not specified'}",
        f"**Connections:** {_fmt_count(connections)}",
        f"**Followers:** {_fmt_count(followers)}",
    ]

    current = payload.get("current_company")
    current_company = payload.get("current_company_name") or (
        current.get("name") if isinstance(current, dict) else None
    )
    if current_company:
        lines.append(f"**Current Company:** {current_company}")

    about = payload.get("about")
    if about:
        about = str(about)
        suffix = "..." if len(about) > _ABOUT_LIMIT else ""
        lines.append(f"\n**About:**\n{about[:_ABOUT_LIMIT]}{suffix}")

    experience = _dicts(payload.get("experience"), 5)
    if experience:
        lines.append("\n**Experience:**")
        for exp in experience:
            lines.append(
                "- "
                + _join(
                    f"{exp.get('title')} at {exp.get('company')}",
                    _date_range(exp),
                    str(exp.get("duration") or ""),
                )
            )
            for pos in _dicts(exp.get("positions"), 3):
                lines.append("  - " + _join(str(pos.get("title")), _date_range(pos)))

    education = _dicts(payload.get("education"), 3)
    if education:
        lines.append("\n**Education:**")
        for edu in education:
            school = edu.get("school") or edu.get("title")
            degree = edu.get("degree")
            field = f" in {edu['field_of_study']}" if edu.get("field_of_study") else ""
            start, end = edu.get("start_year"), edu.get("end_year")
            years = f" ({start or '?'} - {end or '?'})" if start or end else ""
            detail = f": {degree}{field}" if degree else ""
            lines.append(f"- {school}{detail}{years}")

    skills = payload.get("skills")
    if isinstance(skills, list) and skills:
        lines.append(f"\n**Skills:** {', '.join(str(s) for s in skills[:15])}")

    certifications = _dicts(payload.get("certifications"), 5)
    if certifications:
        lines.append("\n**Certifications:**")
        for cert in certifications:
            issuer = cert.get("issuing_organization")
            lines.append(f"- {cert.get('name')}" + (f" ({issuer})" if issuer else ""))

    languages = _dicts(payload.get("languages"))
    if languages:
        rendered = ", ".join(
            f"{lang.get('language')}"
            + (f" ({lang['proficiency']})" if lang.get("proficiency") else "")
            for lang in languages
        )
        lines.append(f"\n**Languages:** {rendered}")

    honors = _dicts(payload.get("honors_and_awards"), 5)
    if honors:
        lines.append(f"\n**Honors & Awards:** {', '.join(str(h.get('title')) for h in honors)}")

    publications = payload.get("publications")
    if isinstance(publications, list) and publications:
        lines.append(f"\n**Publications:** {len(publications)} publication(s)")

    activity = payload.get("activity")
    if isinstance(activity, list) and activity:
        lines.append(f"\n**Recent Activity:** {len(activity)} recent post(s)/article(s)")

    return "\n".join(lines)


def _build_criteria_summary(criteria: QualificationCriteria) -> str:
    lines: list[str] = []

    if criteria.min_connections:
        lines.append(f"- Minimum connections: {criteria.min_connections:,}")
    if criteria.min_followers:
        lines.append(f"- Minimum followers: {criteria.min_followers:,}")
    if criteria.min_experience_years:
        lines.append(f"- Minimum years of experience: {criteria.min_experience_years}")

    labelled = (
        ("Required job titles (must have held)", criteria.required_titles),
        ("Preferred job titles", criteria.preferred_titles),
        ("Required companies (must have worked at)", criteria.required_companies),
        ("Preferred companies", criteria.preferred_companies),
        ("Required skills", criteria.required_skills),
        ("Preferred skills", criteria.preferred_skills),
        ("Required education", criteria.required_education),
    )
    for label, values in labelled:
        if values:
            lines.append(f"- {label}: {', '.join(values)}")

    return "\n".join(lines) if lines else "No specific criteria defined"


def _build_user_prompt(payload: dict[str, Any], criteria: QualificationCriteria) -> str:
    """Assemble the user prompt from the vendor payload and rubric criteria."""
    sections = [
        "Evaluate this candidate profile against the job criteria.",
        f"## Candidate Profile\n{_build_profile_summary(payload)}",
        f"## Job Qualification Criteria\n{_build_criteria_summary(criteria)}",
    ]
    if criteria.custom_prompt:
        sections.append(f"## Additional Requirements\n{criteria.custom_prompt}")
    sections.append("Respond with a JSON object containing score, reasoning, and passed fields.")
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _balanced_end(text: str, start: int) -> int | None:
    """Index just past the ``}`` closing the ``{`` at ``start``, or None."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` block in ``text`` that parses as an object.

    Braces inside string literals are ignored, so prose before or after the
    object (or braces quoted in the reasoning) does not confuse extraction.
    """
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end is not None:
            try:
                data = json.loads(text[start:end])
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                return data
        start = text.find("{", start + 1)
    return None


def _parse_judge_response(raw_text: str) -> ScoringResult:
    """Parse the judge's free text into a normalized ScoringResult.

    The judge's own ``passed`` flag is ignored and recomputed from the score.
    Raises JudgeResponseError when no usable numeric score is present.
    """
    data = _extract_json_object(raw_text)
    if data is None:
        msg = "Could not parse a JSON object from the judge response"
        raise JudgeResponseError(msg)

    if "score" not in data:
        msg = "Judge response missing 'score' field"
        raise JudgeResponseError(msg)

    raw_score = data["score"]
    if isinstance(raw_score, bool):
        msg = f"Judge score is not numeric: {raw_score!r}"
        raise JudgeResponseError(msg)
    try:
        value = float(raw_score)
    except (TypeError, ValueError) as e:
        msg = f"Judge score is not numeric: {raw_score!r}"
        raise JudgeResponseError(msg) from e
    if math.isnan(value):
        msg = "Judge score is NaN"
        raise JudgeResponseError(msg)

    reasoning = data.get("reasoning")
    return ScoringResult.normalized(value, str(reasoning) if reasoning else "")


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class QualificationScorer:
    """Scores profiles with the configured judge provider and stores results."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        provider: LLMProvider,
        config: ScoringConfig,
    ) -> None:
        self._conn = conn
        self._provider = provider
        self._config = config
        self._semaphore = asyncio.Semaphore(config.concurrency)

    async def score(self, payload: dict[str, Any], rubric: QualificationRubric) -> ScoringResult:
        """Ask the judge to score one vendor payload against one rubric.

        Raises:
            ConfigurationError: The provider's API key is not set.
            JudgeResponseError: The judge returned no usable score.
        """
        prompt = _build_user_prompt(payload, rubric.criteria)
        async with self._semaphore:
            raw = await asyncio.to_thread(
                self._provider.complete,
                prompt,
                self._config.llm_model,
                system=JUDGE_SYSTEM_PROMPT,
                max_tokens=self._config.max_tokens,
            )
        return _parse_judge_response(raw)

    async def score_and_store(
        self,
        profile_id: int,
        rubric: QualificationRubric,
        payload: dict[str, Any] | None = None,
    ) -> ScoringResult:
        """Score a profile and upsert the result.

        Without ``payload`` the stored enrichment's raw response is used.

        Raises:
            KeyError: The profile has no enrichment yet.
        """
        if payload is None:
            enrichment = get_enrichment(self._conn, profile_id)
            if enrichment is None:
                msg = f"profile {profile_id} has no enrichment"
                raise KeyError(msg)
            payload = enrichment.raw_response

        result = await self.score(payload, rubric)
        upsert_qualification_result(self._conn, profile_id, rubric.id, result)
        logger.info(
            "Profile %d scored %d against rubric %d (%s)",
            profile_id, result.score, rubric.id, "passed" if result.passed else "not passed",
        )
        return result

    async def _score_pair(
        self,
        profile_id: int,
        rubric: QualificationRubric,
        payload: dict[str, Any] | None,
    ) -> bool:
        try:
            await self.score_and_store(profile_id, rubric, payload)
        except ConfigurationError:
            raise
        except Exception:
            logger.warning(
                "Scoring failed for profile %d against rubric %d",
                profile_id, rubric.id,
                exc_info=True,
            )
            return False
        return True

    async def fan_out(
        self,
        profile_ids: list[int],
        rubrics: list[QualificationRubric],
        payloads: dict[int, dict[str, Any]] | None = None,
    ) -> FanOutResult:
        """Score every profile against every rubric with bounded concurrency.

        Per-pair failures are counted; a missing judge credential is raised.
        """
        payloads = payloads or {}
        pairs = [(pid, rubric) for pid in profile_ids for rubric in rubrics]
        if not pairs:
            return FanOutResult()

        outcomes = await asyncio.gather(
            *(self._score_pair(pid, rubric, payloads.get(pid)) for pid, rubric in pairs)
        )
        scored = sum(1 for ok in outcomes if ok)
        return FanOutResult(scored=scored, failed=len(outcomes) - scored)
