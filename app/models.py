from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StreamSource(BaseModel):
    url: str
    isPlaylist: bool = False
    quality: Optional[str] = None
    language: str
    languageCode: str
    isDub: bool
    providerName: Optional[str] = None
    needsDeepResolution: bool = False
    isEmbed: Optional[bool] = None


class SubtitleTrack(BaseModel):
    languageCode: str
    url: str
    label: Optional[str] = None


class ForwardHeaders(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    referer: str = Field(alias="Referer")
    user_agent: str = Field(alias="User-Agent")


class ExternalIds(BaseModel):
    anilistId: Optional[int] = None
    malId: Optional[int] = None


class StreamBundle(BaseModel):
    forwardHeaders: ForwardHeaders
    sources: List[StreamSource] = Field(default_factory=list)
    subtitles: List[SubtitleTrack] = Field(default_factory=list)
    externalIds: ExternalIds = Field(default_factory=ExternalIds)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
