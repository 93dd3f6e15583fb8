from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Union

from core.state import LinkErrorKind

if TYPE_CHECKING:
    from app.live.link import UpstreamLink


@dataclass(frozen=True)
class SetupComplete:
    pass


@dataclass(frozen=True)
class AudioReceived:
    data: bytes


@dataclass(frozen=True)
class TextReceived:
    text: str


@dataclass(frozen=True)
class InputTranscript:
    text: str


@dataclass(frozen=True)
class OutputTranscript:
    text: str


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class Interrupted:
    pass


@dataclass(frozen=True)
class ResumptionUpdated:
    handle: str | None
    resumable: bool


@dataclass(frozen=True)
class GoAway:
    time_left: str | None = None


@dataclass(frozen=True)
class LinkError:
    kind: LinkErrorKind
    message: str


@dataclass(frozen=True)
class LinkClosed:
    code: int | None = None
    reason: str = ""
    expected: bool = False
    error_kind: LinkErrorKind | None = None


LinkEvent = Union[
    SetupComplete,
    AudioReceived,
    TextReceived,
    InputTranscript,
    OutputTranscript,
    TurnComplete,
    Interrupted,
    ResumptionUpdated,
    GoAway,
    LinkError,
    LinkClosed,
]


class LinkEventHandler(Protocol):
    async def on_link_event(self, link: "UpstreamLink", event: LinkEvent) -> None:
        ...
