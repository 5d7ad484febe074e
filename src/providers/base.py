"""Provider plugin abstraction.

A Provider groups resource types and data source types. The engine never
talks to a cloud API directly: every create/read/update/delete goes
through a ResourceType, every data source read through a DataSourceType.

Resource types describe their attribute schema declaratively (required,
optional, computed, force_new and the typed attribute lists) so that
documents can be validated before any provider call and the planner can
tell an in-place update from a replacement.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from config import ConfigError
from references import contains_unknown

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Provider-side failure (quota, permission, naming collision, missing dependency)."""


@dataclass
class ProviderContext:
    """Everything a type needs to perform an operation.

    Attributes:
        base_dir: Directory relative paths are resolved against
        config: Resolved provider configuration (project, region, ...)
        data_dir: Directory a provider may keep local data in
        backend: Provider-specific client object
    """
    base_dir: Path
    config: dict = field(default_factory=dict)
    data_dir: Optional[Path] = None
    backend: Any = None

    def resolve_path(self, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = self.base_dir / path
        return path


class _Schema:
    """Shared attribute-schema validation for resource and data source types."""

    kind: str = ''
    required: tuple = ()
    optional: tuple = ()
    computed: tuple = ()
    strings: tuple = ()
    booleans: tuple = ()
    enums: dict = {}

    @property
    def attribute_names(self) -> set[str]:
        """Every attribute a reference may name."""
        return set(self.required) | set(self.optional) | set(self.computed)

    def validate(self, attributes: dict) -> list[str]:
        """Check an attribute map against the schema.

        Values that are still unknown (or unresolved references) are only
        checked for presence.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []
        allowed = set(self.required) | set(self.optional)
        for key in attributes:
            if key not in allowed:
                if key in self.computed:
                    errors.append(f"attribute '{key}' is computed and cannot be set")
                else:
                    errors.append(f"unsupported attribute '{key}'")
        for key in self.required:
            if key not in attributes or attributes[key] is None:
                errors.append(f"missing required attribute '{key}'")
        for key in self.strings:
            value = attributes.get(key)
            if value is None or _is_deferred(value):
                continue
            if not isinstance(value, str):
                errors.append(f"attribute '{key}' must be a string, got {value!r}")
        for key in self.booleans:
            value = attributes.get(key)
            if value is None or _is_deferred(value):
                continue
            if not isinstance(value, bool):
                errors.append(f"attribute '{key}' must be a boolean, got {value!r}")
        for key, choices in self.enums.items():
            value = attributes.get(key)
            if value is None or _is_deferred(value):
                continue
            if value not in choices:
                errors.append(f"attribute '{key}' must be one of {', '.join(choices)}, got {value!r}")
        return errors


def _is_deferred(value: Any) -> bool:
    return contains_unknown(value) or (isinstance(value, str) and '${' in value)


class ResourceType(_Schema):
    """An owned infrastructure object with a create/read/update/delete lifecycle."""

    force_new: tuple = ()

    def derive(self, attributes: dict, ctx: ProviderContext) -> dict:
        """Extra attributes to track for change detection (e.g. file hashes).

        Must not have side effects. At plan time some attributes may still be
        UNKNOWN; derive nothing from those.
        """
        return {}

    def create(self, attributes: dict, ctx: ProviderContext) -> tuple[str, dict]:
        """Create the object.

        Returns:
            (resource_id, computed attributes)

        Raises:
            ProviderError: On provider-side failure
        """
        raise NotImplementedError

    def read(self, resource_id: str, ctx: ProviderContext) -> Optional[dict]:
        """Return current attributes (inputs and computed) or None if gone."""
        raise NotImplementedError

    def update(self, resource_id: str, attributes: dict, prior: dict, ctx: ProviderContext) -> dict:
        """Update in place and return computed attributes."""
        raise NotImplementedError

    def delete(self, resource_id: str, ctx: ProviderContext) -> None:
        """Delete the object. Deleting an object that is already gone is not an error."""
        raise NotImplementedError


class DataSourceType(_Schema):
    """A read-only computed artifact."""

    def read(self, attributes: dict, ctx: ProviderContext) -> dict:
        """Compute the data source and return its computed attributes.

        Raises:
            ProviderError: On failure
        """
        raise NotImplementedError


class Provider:
    """A named group of resource and data source types.

    Subclasses list their types and the configuration keys they require.
    Providers with no required configuration may be used without a
    provider block in the document.
    """

    name: str = ''
    required_config: tuple = ()

    def __init__(self):
        self.resource_types: dict[str, ResourceType] = {}
        self.data_source_types: dict[str, DataSourceType] = {}

    def add_resource_type(self, rtype: ResourceType) -> None:
        self.resource_types[rtype.kind] = rtype

    def add_data_source_type(self, dtype: DataSourceType) -> None:
        self.data_source_types[dtype.kind] = dtype

    def validate_config(self, config: dict) -> list[str]:
        errors = []
        for key in self.required_config:
            value = config.get(key)
            if value is None or value == '':
                errors.append(f"provider '{self.name}' missing required setting '{key}'")
        return errors

    def make_backend(self, config: dict, data_dir: Optional[Path]) -> Any:
        """Build the client object handed to types via ProviderContext.backend."""
        return None

    def context(self, config: dict, base_dir: Path, data_dir: Optional[Path] = None) -> ProviderContext:
        """Build a ProviderContext for a resolved configuration.

        Raises:
            ConfigError: If required configuration is missing
        """
        errors = self.validate_config(config)
        if errors:
            raise ConfigError('; '.join(errors))
        return ProviderContext(
            base_dir=base_dir,
            config=dict(config),
            data_dir=data_dir,
            backend=self.make_backend(config, data_dir),
        )


class ProviderRegistry:
    """Maps block kinds to the provider that implements them."""

    def __init__(self, providers: Optional[list[Provider]] = None):
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider
        logger.debug(f"Registered provider '{provider.name}'")

    @property
    def providers(self) -> dict[str, Provider]:
        return dict(self._providers)

    def get(self, name: str) -> Provider:
        """Get provider by name.

        Raises:
            ConfigError: If no provider has that name
        """
        if name not in self._providers:
            raise ConfigError(
                f"Unknown provider '{name}'. Available: {', '.join(sorted(self._providers))}"
            )
        return self._providers[name]

    def provider_for(self, kind: str, is_data: bool) -> Provider:
        """Find the provider implementing a block kind.

        Raises:
            ConfigError: If no provider implements it
        """
        for provider in self._providers.values():
            types = provider.data_source_types if is_data else provider.resource_types
            if kind in types:
                return provider
        label = 'data source' if is_data else 'resource'
        raise ConfigError(f"Unknown {label} type '{kind}'")

    def resource_type(self, kind: str) -> ResourceType:
        return self.provider_for(kind, is_data=False).resource_types[kind]

    def data_source_type(self, kind: str) -> DataSourceType:
        return self.provider_for(kind, is_data=True).data_source_types[kind]


def default_registry() -> ProviderRegistry:
    """Registry with the bundled providers."""
    from providers.archive import ArchiveProvider
    from providers.google import GoogleProvider
    return ProviderRegistry([ArchiveProvider(), GoogleProvider()])


__all__ = [
    'DataSourceType',
    'Provider',
    'ProviderContext',
    'ProviderError',
    'ProviderRegistry',
    'ResourceType',
    'default_registry',
]
