"""
Masking Decider

Pure translation of a link's masking settings into a presentation
instruction for the HTTP layer. No I/O.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from zhort.services.link_config import MaskingConfig


class PresentationMode(str, Enum):
    REDIRECT = "redirect"
    FRAME = "frame"
    SPLASH = "splash"


@dataclass(frozen=True)
class PresentationInstruction:
    """
    How the client should reach the target.

    - REDIRECT: plain HTTP redirect to target_url
    - FRAME: embed target_url in a frame on the short link's origin
    - SPLASH: render splash_html for splash_duration_ms, then navigate to
      target_url (inside a frame when framed is True)
    """
    mode: PresentationMode
    target_url: str
    framed: bool = False
    splash_html: Optional[str] = None
    splash_duration_ms: Optional[int] = None


def decide(config: Optional[MaskingConfig], target_url: str) -> PresentationInstruction:
    config = config or MaskingConfig()

    if config.enable_splash:
        return PresentationInstruction(
            mode=PresentationMode.SPLASH,
            target_url=target_url,
            framed=config.enable_frame,
            splash_html=config.splash_html or "",
            splash_duration_ms=config.splash_duration_ms,
        )

    if config.enable_frame:
        return PresentationInstruction(mode=PresentationMode.FRAME, target_url=target_url, framed=True)

    return PresentationInstruction(mode=PresentationMode.REDIRECT, target_url=target_url)
