from enum import StrEnum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PortProtocol = Literal["tcp", "udp"]


class ContainerStatus(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    UNPAUSING = "unpausing"
    ERROR = "error"


class LaunchPhase(StrEnum):
    """Progress phases surfaced to the UI layer."""

    STARTING_CONTAINER = "starting-container"
    WAITING_ONLINE = "waiting-online"
    LAUNCHING_APP = "launching-app"
    COMPLETED = "completed"


class LaunchState(StrEnum):
    IDLE = "idle"
    STARTING_CONTAINER = "starting_container"
    WAITING_ONLINE = "waiting_online"
    RESOLVING_PORT = "resolving_port"
    LAUNCHING_APP = "launching_app"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class FailureKind(StrEnum):
    RUNTIME = "runtime"  # start/unpause failed
    TIMEOUT = "timeout"  # a polling bound was exhausted
    LOOKUP = "lookup"  # guest port or app not found
    API = "api"  # guest API call failed


class LaunchTarget(BaseModel):
    """The application to launch, matched by name or by executable path."""

    name: Optional[str] = Field(None, description="Display name as listed by the guest API")
    path: Optional[str] = Field(None, description="Executable path inside the guest")

    @model_validator(mode="after")
    def require_name_or_path(self) -> "LaunchTarget":
        if not self.name and not self.path:
            raise ValueError("A launch target needs a name or a path")
        return self

    @property
    def label(self) -> str:
        return self.name or self.path or ""


class LaunchProgress(BaseModel):
    phase: LaunchPhase = LaunchPhase.STARTING_CONTAINER
    target_app_name: str
    cancelled: bool = False


class LaunchOutcome(BaseModel):
    state: LaunchState
    target: LaunchTarget
    reason: str = ""
    failure: Optional[FailureKind] = None

    @property
    def succeeded(self) -> bool:
        return self.state == LaunchState.COMPLETED


class WinApp(BaseModel):
    """An installed application as enumerated by the guest API."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., alias="Name")
    path: str = Field(..., alias="Path")
    source: str = Field("", alias="Source")
    icon: str = Field("", alias="Icon")

    def matches(self, target: LaunchTarget) -> bool:
        if target.name and self.name == target.name:
            return True
        return bool(target.path) and self.path.lower() == target.path.lower()


class LongPortMapping(BaseModel):
    """Long syntax compose port declaration, kept as an opaque passthrough record."""

    model_config = ConfigDict(extra="allow")

    target: int = Field(..., ge=1, le=65535)
    published: Optional[str | int] = None
    host_ip: Optional[str] = None
    protocol: Optional[PortProtocol] = None
    app_protocol: Optional[str] = None
    mode: Optional[str] = None
    name: Optional[str] = None


class ComposeService(BaseModel):
    model_config = ConfigDict(extra="allow")

    image: Optional[str] = None
    container_name: Optional[str] = None
    ports: list[str | LongPortMapping] = Field(default_factory=list)

    @field_validator("ports", mode="before")
    @classmethod
    def stringify_bare_ports(cls, v: Any) -> Any:
        # YAML turns "- 3389" into an int
        if isinstance(v, list):
            return [str(p) if isinstance(p, int) else p for p in v]
        return v


class ComposeConfig(BaseModel):
    """The subset of a compose file the launcher reads; everything else is preserved."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    services: dict[str, ComposeService]

    def guest_service(self, service_name: str = "windows") -> ComposeService:
        try:
            return self.services[service_name]
        except KeyError:
            raise ValueError(f"Compose definition has no '{service_name}' service") from None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
