"""
Prompt Assembler — answers + references → ordered multi-part request.

Pure: no I/O, no randomness.  Identical inputs always produce an identical
AssembledRequest.  Part order:

  1. System directive (emotion, audience, style, text policy)
  2. Topic & constraints (16:9, 1280x720, colour/contrast)
  3. For each reference: image part, then a short context text part
  4. Optional user image + identity-preservation directive
  5. Closing directive restating the hard dimensional requirement
"""

import hashlib
from typing import Optional

from .models import (
    AssembledRequest,
    ImagePart,
    ReferenceImage,
    TextMode,
    TextPart,
    ThumbnailAnswers,
)

ASPECT_RATIO = "16:9"
WIDTH, HEIGHT = 1280, 720
MIN_FONT_PX = 60

# ── Auto text ────────────────────────────────────────────────────────────────

HEADLINES = {
    "tutorial": ["HOW TO", "LEARN", "MASTER", "BEGINNER", "ADVANCED", "STEP BY STEP", "TUTORIAL"],
    "review": ["REVIEW", "REAL TALK", "HONEST", "TRUTH", "REVEALED", "EXPOSED", "REAL REVIEW"],
    "gaming": ["GAMEPLAY", "HIGHLIGHTS", "WINS", "FAILS", "REACTIONS", "MOMENTS", "BEST PLAYS"],
    "tech": ["NEW", "BREAKING", "REVEALED", "TESTING", "COMPARISON", "REVIEW", "LATEST"],
    "fitness": ["WORKOUT", "TRANSFORMATION", "RESULTS", "CHALLENGE", "TIPS", "GUIDE", "TRAINING"],
    "cooking": ["RECIPE", "COOKING", "CHEF", "SECRETS", "TIPS", "HOW TO", "MAKE"],
    "lifestyle": ["DAY IN LIFE", "ROUTINE", "TIPS", "SECRETS", "REVEALED", "EXPOSED", "LIFESTYLE"],
    "business": ["STRATEGY", "SECRETS", "METHODS", "TIPS", "REVEALED", "EXPOSED", "BUSINESS"],
    "entertainment": ["REACTION", "REVIEW", "OPINION", "THOUGHTS", "REAL TALK", "HONEST"],
    "education": ["EXPLAINED", "LEARN", "UNDERSTAND", "BREAKDOWN", "ANALYSIS", "GUIDE"],
}

# First match wins
CATEGORY_KEYWORDS = [
    ("tutorial", ("tutorial", "learn", "how to", "guide")),
    ("review", ("review", "opinion", "thoughts")),
    ("gaming", ("game", "gaming", "play")),
    ("tech", ("tech", "technology", "app", "software")),
    ("fitness", ("workout", "fitness", "exercise", "training")),
    ("cooking", ("cook", "recipe", "food", "kitchen")),
    ("lifestyle", ("life", "routine", "daily", "lifestyle")),
    ("business", ("business", "money", "entrepreneur", "startup")),
    ("entertainment", ("movie", "film", "show", "entertainment")),
    ("education", ("explain", "understand", "analysis", "breakdown")),
]

MAX_SUBTITLE_CHARS = 15


def detect_category(topic: str) -> str:
    lower = topic.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in lower for k in keywords):
            return category
    return "tutorial"


def auto_text(topic: str) -> str:
    """Two-line label derived from the topic alone (stable per topic)."""
    headlines = HEADLINES[detect_category(topic)]
    digest = hashlib.sha256(topic.strip().lower().encode("utf-8")).digest()
    headline = headlines[digest[0] % len(headlines)]

    words = topic.split()[:2]
    subtitle = " ".join(words).upper()
    if len(subtitle) > MAX_SUBTITLE_CHARS and words:
        subtitle = words[0].upper()
    return f"{headline}\n{subtitle}" if subtitle else headline


def resolve_text(answers: ThumbnailAnswers) -> Optional[str]:
    """The literal string to render, or None for a no-text thumbnail."""
    if answers.text_mode == TextMode.CUSTOM:
        return answers.custom_text
    if answers.text_mode == TextMode.AUTO:
        return auto_text(answers.topic)
    return None


# ── Blocks ───────────────────────────────────────────────────────────────────

_TEXT_STYLING = f"""TEXT STYLING:
- Minimum font size {MIN_FONT_PX}px, clearly readable on mobile
- Font, colours and effects must match the thumbnail's mood and palette
- Text should look designed into the image, not pasted on top"""


def _text_policy(answers: ThumbnailAnswers) -> str:
    literal = resolve_text(answers)
    if literal is None:
        return """TEXT POLICY — NO TEXT:
- Do NOT render ANY text, words, letters, numbers, logos or written content
- Communicate purely through imagery, composition and colour"""

    source = "provided by the user" if answers.text_mode == TextMode.CUSTOM else "derived from the topic"
    return f"""TEXT POLICY — EXACT TEXT ({source}):
- Render this EXACT text and ONLY this text: "{literal}"
- Do NOT add any other words, captions, watermarks or placeholder text

{_TEXT_STYLING}"""


def _system_block(answers: ThumbnailAnswers) -> str:
    return f"""You are a professional YouTube thumbnail designer. Create a high click-through-rate thumbnail.

Target emotion: {answers.emotion or "engaging"}
Target audience: {answers.target_audience or "general YouTube viewers"}
Visual style: {answers.style_preference or "bold and eye-catching"}

{_text_policy(answers)}

DESIGN PRINCIPLES:
- One clear focal point with strong visual hierarchy
- Bold, contrasting colours that stand out in search results
- Professional finish, no typos, legible at small sizes"""


def _topic_block(answers: ThumbnailAnswers) -> str:
    lines = [f"Topic: {answers.topic}"]
    if answers.content_type:
        lines.append(f"Content type: {answers.content_type}")
    if answers.key_elements:
        lines.append(f"Key elements: {answers.key_elements}")
    for key in sorted(answers.extras):
        lines.append(f"{key}: {answers.extras[key]}")

    return "\n".join(lines) + f"""

CONSTRAINTS:
- Aspect ratio EXACTLY {ASPECT_RATIO}, {WIDTH}x{HEIGHT}px
- No cropping: the full composition must be visible
- High contrast between subject and background; saturated, punchy colours
- Keep important elements clear of the bottom-right corner (video timestamp)"""


def _reference_note(index: int, ref: ReferenceImage) -> str:
    by = f" by {ref.channel_title}" if ref.channel_title else ""
    return (
        f'Reference Image {index}: "{ref.title}"{by} ({ref.view_count:,} views). '
        "Study this thumbnail's color scheme, text placement, visual hierarchy, "
        "and overall composition. Use it as inspiration, do not copy it."
    )


USER_IMAGE_DIRECTIVE = """USER IMAGE:
- The image above was supplied by the user and is the primary focal point
- PRESERVE IDENTITY: do not change, distort, beautify or replace any person's face or features
- Keep the person recognisably the same; enhance only lighting, background and framing"""

CLOSING_DIRECTIVE = (
    f"FINAL REQUIREMENT: output a single image at EXACTLY {WIDTH}x{HEIGHT}px "
    f"({ASPECT_RATIO}). Follow the text policy above exactly."
)


def assemble(
    answers: ThumbnailAnswers,
    references: list[ReferenceImage],
    user_image: Optional[tuple[bytes, str]] = None,
) -> AssembledRequest:
    """
    Build the generation request.

    Args:
        answers:    Validated answer set.
        references: Downloaded reference thumbnails, in relevance order.
        user_image: Optional ``(bytes, mime_type)`` uploaded by the user.
    """
    parts: list = [
        TextPart(text=_system_block(answers)),
        TextPart(text=_topic_block(answers)),
    ]

    for i, ref in enumerate(references, start=1):
        parts.append(ImagePart(mime_type=ref.mime_type, data=ref.data))
        parts.append(TextPart(text=_reference_note(i, ref)))

    if user_image is not None:
        data, mime = user_image
        parts.append(ImagePart(mime_type=mime, data=data))
        parts.append(TextPart(text=USER_IMAGE_DIRECTIVE))

    parts.append(TextPart(text=CLOSING_DIRECTIVE))
    return AssembledRequest(parts=parts)
