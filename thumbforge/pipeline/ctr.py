"""
Advisory click-through estimates stored alongside each result.

Nothing in the pipeline branches on these numbers.
"""

from .models import ReferenceImage, ThumbnailAnswers

HIGH_ENERGY_EMOTIONS = ("excit", "dramatic", "urgen", "shock")
BOLD_STYLES = ("bold", "eye-catching", "vibrant")


def reference_score(references: list[ReferenceImage]) -> int:
    """Bucket the average reference view count into a 0-100 score."""
    if not references:
        return 0
    avg = sum(r.view_count for r in references) / len(references)
    if avg > 1_000_000:
        return 95
    if avg > 500_000:
        return 85
    if avg > 100_000:
        return 75
    if avg > 50_000:
        return 65
    if avg > 10_000:
        return 55
    return 45


def estimate_ctr(answers: ThumbnailAnswers, references: list[ReferenceImage]) -> dict:
    score = 70
    insights: list[str] = []
    recommendations: list[str] = []

    if any(k in answers.emotion.lower() for k in HIGH_ENERGY_EMOTIONS):
        score += 10
        insights.append("High-energy emotion choice increases CTR potential")

    if any(k in answers.style_preference.lower() for k in BOLD_STYLES):
        score += 8
        insights.append("Bold style preference aligns with high-CTR thumbnails")

    if references:
        avg = sum(r.view_count for r in references) / len(references)
        if avg > 100_000:
            score += 12
            insights.append("High-performing reference thumbnails indicate strong CTR potential")

    if score < 80:
        recommendations.append("Consider using more contrasting colors")
        recommendations.append("Add visual elements that create curiosity")

    return {
        "score": min(score, 100),
        "insights": insights,
        "recommendations": recommendations,
    }
