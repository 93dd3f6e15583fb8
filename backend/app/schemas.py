from typing import Literal

from pydantic import BaseModel, Field, field_validator


class StartInterviewRequest(BaseModel):
    candidate_name: str = Field(default="", max_length=100)
    position: str = Field(..., min_length=1, max_length=200)
    difficulty: Literal["Easy", "Standard", "Hard"] = "Standard"
    language: Literal["en", "bg"] = "en"
    voice: Literal["Algieba", "Kore", "Fenrir", "Despina"] = "Algieba"
    interviewer_name_en: str = Field(default="George", max_length=50)
    interviewer_name_bg: str = Field(default="Георги", max_length=50)
    cv_text: str | None = Field(default=None, max_length=20000)
    api_key: str | None = Field(default=None, max_length=200)

    @field_validator("candidate_name", "position", "interviewer_name_en", "interviewer_name_bg", mode="before")
    @classmethod
    def _strip(cls, value):
        return str(value or "").strip()

    @field_validator("interviewer_name_en")
    @classmethod
    def _default_en_name(cls, value: str) -> str:
        return value or "George"

    @field_validator("interviewer_name_bg")
    @classmethod
    def _default_bg_name(cls, value: str) -> str:
        return value or "Георги"

    @field_validator("api_key", mode="before")
    @classmethod
    def _blank_key_is_none(cls, value):
        text = str(value or "").strip()
        return text or None


class ValidateKeyRequest(BaseModel):
    apiKey: str | None = None


class VoiceProfile(BaseModel):
    id: str
    nameEN: str
    nameBG: str
    gender: Literal["male", "female"]


VOICE_PROFILES = [
    VoiceProfile(id="Algieba", nameEN="George", nameBG="Георги", gender="male"),
    VoiceProfile(id="Kore", nameEN="Victoria", nameBG="Виктория", gender="female"),
    VoiceProfile(id="Fenrir", nameEN="Max", nameBG="Макс", gender="male"),
    VoiceProfile(id="Despina", nameEN="Diana", nameBG="Диана", gender="female"),
]


class InterviewReportResponse(BaseModel):
    sessionId: str
    overallScore: int
    communicationScore: int
    technicalScore: int
    confidenceScore: int
    strengths: list[str]
    improvements: list[str]
    detailedAnalysis: str
    verdict: str
    transcript: str = ""
