"""Variant profile loading and validation for YAML-based picoforge profiles."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from picoforge.core.errors import ProfileLoadError, ProfileValidationError
from picoforge.core.model import MatchRules, SettingSpec, VariantProfile

GENERIC_PROFILE_ID = "generic"
_DEFAULT_MAX_APDU_PAYLOAD = 255
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ProfileValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, VariantProfile]
    warnings: tuple[str, ...]

    @property
    def generic(self) -> VariantProfile:
        return self.profiles[GENERIC_PROFILE_ID]


@lru_cache(maxsize=None)
def load_schema_validator(name: str) -> Any:
    schema_text = resources.files("picoforge.schemas").joinpath(name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _profile_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "picoforge/profiles", xdg_data / "picoforge/profiles"


def read_yaml(
    path: Path | Traversable,
    *,
    error: type[Exception] = ProfileValidationError,
    load_error: type[Exception] = ProfileLoadError,
) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise load_error(f"Could not read {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except ProfileValidationError as exc:
        raise error(f"{path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise error(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise error(f"File {path} must contain a mapping at root")
    return loaded


def _parse_usb_id(value: str, *, context: str) -> tuple[int, int]:
    vid_text, _, pid_text = value.partition(":")
    try:
        return int(vid_text, 16), int(pid_text, 16)
    except ValueError as exc:
        raise ProfileValidationError(f"{context} must look like 'VVVV:PPPP'") from exc


def _build_setting(name: str, spec: dict[str, Any], *, context: str) -> SettingSpec:
    setting = SettingSpec(
        type=spec["type"],
        minimum=spec.get("min"),
        maximum=spec.get("max"),
        max_length=spec.get("max_length"),
        choices=tuple(spec.get("choices", ())),
    )
    if setting.type == "int" and setting.minimum is None and setting.maximum is None and not setting.choices:
        raise ProfileValidationError(f"{context}.{name} needs a range or choices")
    if setting.minimum is not None and setting.maximum is not None and setting.minimum > setting.maximum:
        raise ProfileValidationError(f"{context}.{name} has min greater than max")
    if setting.type == "str" and setting.max_length is None:
        raise ProfileValidationError(f"{context}.{name} needs max_length")
    return setting


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> VariantProfile:
    validator = load_schema_validator("profile.schema.json")
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    profile_id = doc["id"]
    settings = {
        name: _build_setting(name, spec, context=f"{profile_id}.settings")
        for name, spec in doc["settings"].items()
    }
    if ("vid" in settings) != ("pid" in settings):
        raise ProfileValidationError(f"{profile_id}: vid and pid must be declared together")
    commands = frozenset(doc["commands"])
    if settings and "write_config" not in commands:
        raise ProfileValidationError(f"{profile_id}: settings declared without write_config command")

    return VariantProfile(
        id=profile_id,
        name=doc["name"],
        schema_version=int(doc["schema_version"]),
        match=MatchRules(
            mcu=tuple(doc["match"]["mcu"]),
            product=tuple(doc["match"]["product"]),
        ),
        commands=commands,
        settings=settings,
        reserved_usb_ids=tuple(
            _parse_usb_id(value, context=f"{profile_id}.reserved_usb_ids")
            for value in doc.get("reserved_usb_ids", [])
        ),
        max_apdu_payload=int(doc.get("limits", {}).get("max_apdu_payload", _DEFAULT_MAX_APDU_PAYLOAD)),
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("picoforge.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, VariantProfile] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_profile_paths(), key=lambda p: p.name):
        doc = read_yaml(path)
        profile = _build_profile(doc, path)
        profiles[profile.id] = profile

    for path in _iter_user_profile_paths():
        doc = read_yaml(path)
        profile = _build_profile(doc, path)
        if profile.id in profiles:
            warning = f"User profile '{profile.id}' overrides packaged profile"
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile

    if GENERIC_PROFILE_ID not in profiles:
        raise ProfileLoadError(f"No '{GENERIC_PROFILE_ID}' profile available")

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))
