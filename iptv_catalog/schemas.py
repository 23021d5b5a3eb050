from collections.abc import Mapping
import hashlib
import json
from typing import Annotated, Any, Literal
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from iptv_catalog.utils.timezone import normalize_offset_hours


def _validate_http_url(value: str, field_name: str) -> str:
    value = value.strip()
    if not value.lower().startswith(("http://", "https://")):
        raise ValueError(f"{field_name} must be an HTTP/HTTPS URL")
    return value


class BaseSourceConfig(BaseModel):
    """Options shared by every provider kind"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    include_live: bool = Field(default=True, description="Ingest live channels")
    include_movies: bool = Field(default=True, description="Ingest movies")
    include_series: bool = Field(default=True, description="Ingest series")
    enable_epg: bool = Field(default=False, description="Fetch and index the programme guide")
    epg_url: str | None = Field(default=None, description="Custom XMLTV URL overriding the provider guide")
    epg_offset_hours: float = Field(default=0.0, description="Hour correction for guide times without a UTC offset")
    debug: bool = Field(default=False, description="Verbose diagnostics for this catalog")

    @field_validator('epg_offset_hours', mode='before')
    @classmethod
    def validate_epg_offset(cls, v: Any) -> float:
        """Clamp offset to +/-48 hours, anything else becomes 0"""
        return normalize_offset_hours(v)

    @field_validator('epg_url', mode='before')
    @classmethod
    def validate_epg_url(cls, v: Any) -> str | None:
        """Blank values disable the custom guide URL"""
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return _validate_http_url(str(v), 'epg_url')

    def fingerprint(self) -> str:
        """
        Stable hash of every field that affects fetched content.

        Diagnostic flags are excluded so toggling them reuses the cached catalog.
        """
        data = self.model_dump(mode='json', exclude={'debug'})
        canonical = json.dumps(data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class XtreamSourceConfig(BaseSourceConfig):
    """Xtream Codes style provider, via its JSON API or its m3u_plus playlist"""
    provider: Literal["xtream"] = "xtream"
    xtream_url: str = Field(..., description="Provider base URL")
    xtream_username: str = Field(..., min_length=1)
    xtream_password: str = Field(..., min_length=1)
    xtream_use_m3u: bool = Field(default=False, description="Use get.php playlist instead of the JSON API")
    xtream_output: str | None = Field(default=None, description="Stream container, e.g. 'ts' or 'm3u8'")

    @field_validator('xtream_url')
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require HTTP(S) and drop trailing slashes"""
        return _validate_http_url(v, 'xtream_url').rstrip('/')

    @field_validator('xtream_output', mode='before')
    @classmethod
    def validate_output(cls, v: Any) -> str | None:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return str(v).strip().lstrip('.')

    @property
    def api_url(self) -> str:
        return f"{self.xtream_url}/player_api.php"

    def credential_params(self) -> dict[str, str]:
        return {"username": self.xtream_username, "password": self.xtream_password}

    def playlist_url(self) -> str:
        params = {**self.credential_params(), "type": "m3u_plus"}
        if self.xtream_output:
            params["output"] = self.xtream_output
        return f"{self.xtream_url}/get.php?{urlencode(params)}"

    def guide_url(self) -> str:
        """Custom guide URL when set, otherwise the provider's xmltv.php"""
        if self.epg_url:
            return self.epg_url
        return f"{self.xtream_url}/xmltv.php?{urlencode(self.credential_params())}"


class PlaylistSourceConfig(BaseSourceConfig):
    """Direct playlist URL with an optional XMLTV guide"""
    provider: Literal["m3u"] = "m3u"
    m3u_url: str = Field(..., description="Playlist URL")

    @field_validator('m3u_url')
    @classmethod
    def validate_playlist_url(cls, v: str) -> str:
        return _validate_http_url(v, 'm3u_url')

    def guide_url(self) -> str | None:
        return self.epg_url


SourceConfig = Annotated[XtreamSourceConfig | PlaylistSourceConfig, Field(discriminator="provider")]

_SOURCE_CONFIG_ADAPTER = TypeAdapter(SourceConfig)


def parse_source_config(data: Mapping[str, Any]) -> XtreamSourceConfig | PlaylistSourceConfig:
    """
    Validate raw configuration into the matching source config

    Raises:
        pydantic.ValidationError: If the configuration is invalid
    """
    return _SOURCE_CONFIG_ADAPTER.validate_python(dict(data))
