import logging
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import ComposeConfig
from .ports import PortMapper

logger = logging.getLogger(__name__)

GUEST_SERVICE = "windows"

INT_TAG = "tag:yaml.org,2002:int"


class ComposeLoader(yaml.SafeLoader):
    """
    Safe loader without YAML 1.1 base-60 integers, so an unquoted short port
    entry such as ``22:22`` stays a string instead of loading as 1342.
    """


ComposeLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != INT_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ComposeLoader.add_implicit_resolver(
    INT_TAG,
    re.compile(
        r"""^(?:[-+]?0b[0-1_]+
        |[-+]?0[0-7_]+
        |[-+]?(?:0|[1-9][0-9_]*)
        |[-+]?0x[0-9a-fA-F_]+)$""",
        re.X,
    ),
    list("-+0123456789"),
)


class ComposeFileError(Exception):
    """Raised when the compose definition is missing or invalid."""


def load_compose(path: Path) -> ComposeConfig:
    """Loads and validates the container definition from disk."""
    if not path.exists():
        raise ComposeFileError(f"{path} not found")

    try:
        with open(path) as f:
            raw_config = yaml.load(f, Loader=ComposeLoader)
    except yaml.YAMLError as e:
        raise ComposeFileError(f"{path} is not valid YAML: {e}") from e

    if not isinstance(raw_config, dict):
        raise ComposeFileError(f"{path} does not contain a compose mapping")

    try:
        return ComposeConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ComposeFileError(f"{path} is not a valid compose definition: {e}") from e


def build_port_mapper(compose: ComposeConfig, service: str = GUEST_SERVICE) -> PortMapper:
    try:
        return PortMapper(compose.guest_service(service).ports)
    except ValueError as e:
        raise ComposeFileError(str(e)) from e


def save_compose(path: Path, compose: ComposeConfig, mapper: PortMapper, service: str = GUEST_SERVICE) -> None:
    """Writes the compose definition back with the mapper's ports."""
    document = compose.to_document()
    document["services"][service]["ports"] = mapper.compose_format()

    with open(path, "w") as f:
        yaml.safe_dump(document, f, sort_keys=False)


class ComposeStore:
    """
    Keeps the port mapper in step with the compose file on disk.
    The mapper is rebuilt whenever the file changes.
    """

    def __init__(self, path: Path, service: str = GUEST_SERVICE):
        self.path = path
        self.service = service
        self._mtime: float | None = None
        self._compose: ComposeConfig | None = None
        self._mapper: PortMapper | None = None

    def reload(self) -> PortMapper:
        self._compose = load_compose(self.path)
        self._mapper = build_port_mapper(self._compose, self.service)
        self._mtime = self.path.stat().st_mtime
        return self._mapper

    def mapper(self) -> PortMapper | None:
        """Current mapper, or None while no valid definition is on disk."""
        try:
            if self._mapper is None or self.path.stat().st_mtime != self._mtime:
                return self.reload()
        except OSError:
            return None
        except ComposeFileError as e:
            logger.error("Cannot load port mappings: %s", e)
            return None
        return self._mapper

    def save(self) -> None:
        if self._compose is None or self._mapper is None:
            self.reload()
        save_compose(self.path, self._compose, self._mapper, self.service)
        self._mtime = self.path.stat().st_mtime
