"""Line-art prompt compilation for colouring pages.

The final prompt wraps the user's scene description in a fixed set of style
directives that keep every page in the same black-and-white colouring-book
aesthetic, followed by the negative directives the upstream model accepts as
trailing flags.

Template Structure::

    Black & white refined lineart, scene: [Scene], [Style descriptors]. [Flags]

The builder performs no validation.  Callers reject empty scenes before
calling it (see :class:`~linecraft.api.models.GenerationRequest`).

Usage
-----
::

    compiled = build_prompt("  a cute dog holding gifts ")
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Fixed style sections.
# These are constants rather than configuration because they define the
# colouring-book look.  Users control variation only through the scene.
# ---------------------------------------------------------------------------

_STYLE_PREFIX = "Black & white refined lineart, scene:"

_STYLE_DESCRIPTORS = (
    "elegant mood, 6–8 detailed elements, crisp high-contrast outlines, coloring-book style."
)

_NEGATIVE_DIRECTIVES = "--stylize 750 --no watermarks --no signature"


def build_prompt(scene: str) -> str:
    """Compile the full generation prompt from a raw scene description.

    Args:
        scene: The user's scene text.  Leading and trailing whitespace is
            removed before it is embedded.

    Returns:
        The prompt string sent upstream.
    """
    clean = scene.strip()
    return f"{_STYLE_PREFIX} {clean}, {_STYLE_DESCRIPTORS} {_NEGATIVE_DIRECTIVES}"
