"""
Composition of the image generation instruction text.

Pure string templating driven by the selected background's metadata, the
kiosk user's self-reported demographic attribute and a placement hint.
"""

import photobooth.services.background_catalog

PROMINENCE_LEVELS = ("low", "medium", "high")
DEFAULT_PROMINENCE = "medium"

_IDENTITY_INSTRUCTIONS: dict[str, str] = {
    "male": "Preserve masculine facial features and body proportions from the input photo.",
    "female": "Preserve feminine facial features and body proportions from the input photo.",
    "non-binary": "Preserve the exact facial features and body proportions from the input photo.",
    "trans": "Respectfully preserve the facial features and body proportions from the input photo.",
}
_NEUTRAL_IDENTITY_KEY = "non-binary"

_CLOTHING_BY_TIME_PERIOD: dict[str, list[str]] = {
    "past": [
        "HISTORICAL ATHLETIC ATTIRE:",
        "- Simple white or cream cotton athletic shirt",
        "- Dark knee-length athletic shorts",
        "- Long dark socks; canvas or leather lace-up shoes",
        "- Natural fabrics; no modern logos",
    ],
    "present": [
        "MODERN ATHLETIC ATTIRE:",
        "- Moisture-wicking running t-shirt in a solid athletic color",
        "- Mid-thigh running shorts",
        "- Current running shoes with subtle design",
    ],
    "future": [
        "FUTURISTIC ATHLETIC ATTIRE:",
        "- Sleek bio-responsive athletic top with subtle geometric patterns",
        "- Streamlined smart-fabric shorts",
        "- Minimal shoes with advanced cushioning",
    ],
}

_PLACEMENT_BY_PROMINENCE: dict[str, str] = {
    "low": "Place the runner in the far mid-ground of the identified path, small relative to the scene.",
    "medium": "Place the runner in the mid-ground of the identified path at a natural, realistic scale.",
    "high": (
        "Place the runner in the near mid-ground of the identified path, larger but still with "
        "enough distance from the camera for realistic environmental context."
    ),
}


def _color_treatment_instruction(color_treatment: str) -> str:
    normalised = color_treatment.lower()
    if "sepia" in normalised or "vintage" in normalised:
        return (
            "Apply a unified SEPIA tone to the generated person, including the face; "
            "match the background contrast and grain."
        )
    if "black" in normalised or "monochrome" in normalised:
        return (
            "Convert the generated person to BLACK-AND-WHITE, including the face; "
            "match the background contrast and grain."
        )
    return "Use natural, full-color rendering consistent with the background lighting."


def _pose_instruction(background: photobooth.services.background_catalog.BackgroundDefinition) -> str:
    if background.pose == "walking":
        return "POSE: relaxed post-race walk, upright posture, natural arm swing; not running."
    return "POSE: natural running form, arms and legs credibly mid-stride; no exaggerated motion."


def compose_generation_prompt(
    demographic_attribute: str,
    background: photobooth.services.background_catalog.BackgroundDefinition,
    prominence: str = DEFAULT_PROMINENCE,
) -> str:
    """
    Build the instruction sent alongside the selfie and background image.

    Unknown demographic attributes use the neutral identity wording and
    unknown prominence values fall back to ``medium``.
    """
    identity_instruction = _IDENTITY_INSTRUCTIONS.get(
        demographic_attribute,
        _IDENTITY_INSTRUCTIONS[_NEUTRAL_IDENTITY_KEY],
    )
    clothing_lines = _CLOTHING_BY_TIME_PERIOD.get(background.time_period, _CLOTHING_BY_TIME_PERIOD["present"])
    placement_instruction = _PLACEMENT_BY_PROMINENCE.get(prominence, _PLACEMENT_BY_PROMINENCE[DEFAULT_PROMINENCE])

    sections = [
        "Insert the person from the first image into the background scene of the second image "
        "as a marathon runner.",
        "- Preserve the person's identity exactly: face, hair and body proportions.",
        f"- {identity_instruction}",
        f"SCENE: {background.description} ({background.era}).",
        f"LIGHTING: {background.lighting}; soft, realistic shadows consistent with the scene.",
        f"COLOR: {_color_treatment_instruction(background.color_treatment)}",
        "\n".join(clothing_lines),
        "PLACEMENT: Identify the primary path, road or track in the background. " + placement_instruction,
        _pose_instruction(background),
        "Keep the background unchanged. Output a single photorealistic image.",
    ]
    return "\n\n".join(sections)
