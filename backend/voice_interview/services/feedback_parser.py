import re
import math
import logging
from typing import Optional, List

from voice_interview.models.feedback import (
    ParsedFeedback,
    ParsedFeedbackScores,
    ParsedFeedbackSections,
    ParsedFeedbackSummary,
    InterviewMetricInput,
)

logger = logging.getLogger(__name__)

SCORE_PATTERNS = {
    "overall": re.compile(r"Overall\s*Performance\s*Score[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "content": re.compile(r"Content\s*Quality[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "communication": re.compile(r"Communication[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "confidence": re.compile(r"Confidence[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "technical": re.compile(r"Technical\s*Knowledge[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "problem_solving": re.compile(r"Problem\s*Solving[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
}

# "- Label: NN" bullets under a score breakdown section
BREAKDOWN_PATTERNS = {
    "content": re.compile(r"-\s*Content\s*Quality[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "communication": re.compile(r"-\s*Communication[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "confidence": re.compile(r"-\s*Confidence[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "technical": re.compile(r"-\s*Technical\s*Knowledge[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
    "problem_solving": re.compile(r"-\s*Problem\s*Solving[:\s]*(\d+)(?:/100)?", re.IGNORECASE),
}

OVERALL_WEIGHTS = {
    "content": 0.35,
    "communication": 0.25,
    "confidence": 0.20,
    "technical": 0.20,
}

# (category, metric name, notes attribute)
METRIC_CATEGORIES = [
    ("content", "Content Quality", "content_quality_notes"),
    ("communication", "Communication", "communication_notes"),
    ("confidence", "Confidence", "confidence_notes"),
    ("technical", "Technical Knowledge", "technical_notes"),
    ("problem_solving", "Problem Solving", "problem_solving_notes"),
]

def _extract_score(markdown: str, pattern: re.Pattern) -> Optional[int]:
    match = pattern.search(markdown)
    if match:
        score = int(match.group(1))
        if 0 <= score <= 100:
            return score
    return None

def parse_scores(markdown: str) -> ParsedFeedbackScores:
    if not isinstance(markdown, str) or not markdown:
        return ParsedFeedbackScores()

    values = {"overall_score": _extract_score(markdown, SCORE_PATTERNS["overall"])}
    for category in BREAKDOWN_PATTERNS:
        score = _extract_score(markdown, SCORE_PATTERNS[category])
        if score is None:
            score = _extract_score(markdown, BREAKDOWN_PATTERNS[category])
        values[f"{category}_score"] = score

    scores = ParsedFeedbackScores(**values)
    logger.debug(f"[FEEDBACK] Parsed scores: {scores.model_dump()}")
    return scores

def _extract_section(markdown: str, section_name: str) -> Optional[str]:
    pattern = re.compile(rf"##\s*{re.escape(section_name)}[\s\S]*?(?=##|$)", re.IGNORECASE)
    match = pattern.search(markdown)
    if not match:
        return None
    header = re.compile(rf"##\s*{re.escape(section_name)}\s*", re.IGNORECASE)
    return header.sub("", match.group(0), count=1).strip()

def _extract_bullet_points(section: Optional[str]) -> List[str]:
    if not section:
        return []
    bullets = []
    for line in section.split("\n"):
        if line.strip().startswith("-"):
            item = re.sub(r"^-\s*", "", line.strip()).strip()
            if item:
                bullets.append(item)
    return bullets

def parse_sections(markdown: str) -> ParsedFeedbackSections:
    if not isinstance(markdown, str) or not markdown:
        return ParsedFeedbackSections()

    improvements = _extract_section(markdown, "Improvements")
    if improvements is None:
        improvements = _extract_section(markdown, "Areas for Improvement")

    return ParsedFeedbackSections(
        summary=_extract_section(markdown, "Interview Summary"),
        strengths=_extract_bullet_points(_extract_section(markdown, "Strengths")),
        improvements=_extract_bullet_points(improvements),
        recommendations=_extract_bullet_points(_extract_section(markdown, "Recommendations")),
        content_quality_notes=_extract_section(markdown, "Content Quality"),
        communication_notes=_extract_section(markdown, "Communication"),
        confidence_notes=_extract_section(markdown, "Confidence"),
        technical_notes=_extract_section(markdown, "Technical Knowledge"),
        problem_solving_notes=_extract_section(markdown, "Problem Solving"),
    )

def parse_feedback(markdown: str) -> ParsedFeedback:
    """Scores, sections and the raw text of a legacy feedback document"""
    raw = markdown if isinstance(markdown, str) else ""
    return ParsedFeedback(
        scores=parse_scores(raw),
        sections=parse_sections(raw),
        raw_markdown=raw,
    )

def extract_overall_score(markdown: str) -> Optional[int]:
    """
    Explicit overall score if present, otherwise the weighted average of the
    category scores that are present (problem solving carries no weight).
    Rounds half up; None when nothing is scorable.
    """
    if not isinstance(markdown, str) or not markdown:
        return None

    scores = parse_scores(markdown)
    if scores.overall_score is not None:
        return scores.overall_score

    present = [
        (getattr(scores, f"{category}_score"), weight)
        for category, weight in OVERALL_WEIGHTS.items()
        if getattr(scores, f"{category}_score") is not None
    ]
    if not present:
        return None

    total_weight = sum(weight for _, weight in present)
    weighted_sum = sum(score * weight for score, weight in present)
    return math.floor(weighted_sum / total_weight + 0.5)

def scores_to_metrics(scores: ParsedFeedbackScores, sections: ParsedFeedbackSections) -> List[InterviewMetricInput]:
    metrics = []
    for category, metric_name, notes_attr in METRIC_CATEGORIES:
        score = getattr(scores, f"{category}_score")
        if score is None:
            continue
        metrics.append(InterviewMetricInput(
            category=category,
            metric_name=metric_name,
            score=score,
            max_score=100,
            feedback=getattr(sections, notes_attr),
        ))
    return metrics

def parse_feedback_summary(markdown: str) -> ParsedFeedbackSummary:
    scores = parse_scores(markdown if isinstance(markdown, str) else "")
    category_scores = {
        category: getattr(scores, f"{category}_score")
        for category, _, _ in METRIC_CATEGORIES
        if getattr(scores, f"{category}_score") is not None
    }
    return ParsedFeedbackSummary(
        overall_score=extract_overall_score(markdown),
        category_scores=category_scores,
    )
