"""Desired-state document loading and validation.

A document declares variables, a provider binding, data sources,
resources and outputs. Resources and data sources are addressed as
TYPE.NAME and data.TYPE.NAME; attribute values may reference other
declarations with ${...} expressions (see references.py).

Schema v1 is the only supported version.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError, parse_yaml
from references import find_references

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

# Default document filename when none specified
DEFAULT_DOCUMENT = 'main.yaml'

VARIABLE_TYPES = {
    'string': str,
    'number': (int, float),
    'bool': bool,
}

ENV_VAR_PREFIX = 'CONVERGE_VAR_'

_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')

_MISSING = object()


@dataclass
class Variable:
    """A named input slot supplied at apply time.

    Attributes:
        name: Variable name (referenced as var.NAME)
        description: Free-form description
        type: Optional type constraint (string, number, bool)
        default: Default value; absent means the variable is required
    """
    name: str
    description: str = ''
    type: Optional[str] = None
    default: Any = _MISSING

    @property
    def required(self) -> bool:
        return self.default is _MISSING

    @classmethod
    def from_dict(cls, data: dict) -> 'Variable':
        var_type = data.get('type')
        if var_type is not None and var_type not in VARIABLE_TYPES:
            raise ConfigError(
                f"Variable '{data['name']}' has unsupported type '{var_type}'. "
                f"Supported: {', '.join(sorted(VARIABLE_TYPES))}"
            )
        return cls(
            name=data['name'],
            description=data.get('description', ''),
            type=var_type,
            default=data.get('default', _MISSING),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name}
        if self.description:
            d['description'] = self.description
        if self.type is not None:
            d['type'] = self.type
        if not self.required:
            d['default'] = self.default
        return d


@dataclass
class ProviderBinding:
    """Names the target cloud and its configuration.

    Attributes:
        name: Provider name (e.g. google)
        config: Remaining keys (project, region, ...), may hold references
    """
    name: str
    config: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> 'ProviderBinding':
        if 'name' not in data:
            raise ConfigError("Provider block missing required field: name")
        config = {k: v for k, v in data.items() if k != 'name'}
        return cls(name=data['name'], config=config)

    def to_dict(self) -> dict:
        return {'name': self.name, **self.config}


@dataclass
class Block:
    """A resource or data source declaration.

    Attributes:
        type: Block kind (e.g. storage_bucket, archive_file)
        name: Local name, unique per type
        attributes: Attribute map, values may hold references
        depends_on: Explicit dependency addresses
        is_data: True for data sources
    """
    type: str
    name: str
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    is_data: bool = False

    @property
    def address(self) -> str:
        prefix = 'data.' if self.is_data else ''
        return f'{prefix}{self.type}.{self.name}'

    def references(self) -> list[str]:
        """Addresses this block refers to (variables excluded)."""
        addresses: list[str] = []
        for ref in find_references(self.attributes):
            if ref.kind != 'var' and ref.address not in addresses:
                addresses.append(ref.address)
        for dep in self.depends_on:
            if dep not in addresses:
                addresses.append(dep)
        return addresses

    @classmethod
    def from_dict(cls, data: dict, is_data: bool = False) -> 'Block':
        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"Block {data.get('type')}.{data.get('name')}: attributes must be a map")
        depends_on = data.get('depends_on') or []
        if not isinstance(depends_on, list):
            raise ConfigError(f"Block {data.get('type')}.{data.get('name')}: depends_on must be a list")
        return cls(
            type=data['type'],
            name=data['name'],
            attributes=dict(attributes),
            depends_on=list(depends_on),
            is_data=is_data,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'attributes': self.attributes,
        }
        if self.depends_on:
            d['depends_on'] = self.depends_on
        return d

    def __repr__(self) -> str:
        return f"Block({self.address})"


@dataclass
class Output:
    """A named projection of declaration attributes surfaced after apply."""
    name: str
    value: Any
    description: str = ''
    sensitive: bool = False

    def references(self) -> list[str]:
        return [r.address for r in find_references(self.value) if r.kind != 'var']

    @classmethod
    def from_dict(cls, data: dict) -> 'Output':
        if 'value' not in data:
            raise ConfigError(f"Output '{data['name']}' missing required field: value")
        return cls(
            name=data['name'],
            value=data['value'],
            description=data.get('description', ''),
            sensitive=bool(data.get('sensitive', False)),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'value': self.value}
        if self.description:
            d['description'] = self.description
        if self.sensitive:
            d['sensitive'] = True
        return d


@dataclass
class DocumentSettings:
    """Optional execution settings.

    Unset fields (None) defer to engine configuration.

    Attributes:
        on_error: 'continue' or 'stop'
        parallelism: Max concurrent operations
    """
    on_error: Optional[str] = None
    parallelism: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'DocumentSettings':
        if not data:
            return cls()
        on_error = data.get('on_error')
        if on_error is not None and on_error not in ('continue', 'stop'):
            raise ConfigError(f"settings.on_error must be 'continue' or 'stop', got '{on_error}'")
        parallelism = data.get('parallelism')
        if parallelism is not None and (not isinstance(parallelism, int) or parallelism < 1):
            raise ConfigError(f"settings.parallelism must be a positive integer, got {parallelism!r}")
        return cls(on_error=on_error, parallelism=parallelism)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.on_error is not None:
            d['on_error'] = self.on_error
        if self.parallelism is not None:
            d['parallelism'] = self.parallelism
        return d


@dataclass
class Document:
    """Desired-state document.

    Attributes:
        schema_version: Document schema version
        name: Document identifier (also names its state directory)
        description: Optional description
        variables: Declared input variables
        provider: Provider binding (None when only built-in data sources are used)
        data: Data source declarations
        resources: Resource declarations
        outputs: Output declarations
        settings: Execution settings
        source_path: Path the document was loaded from
    """
    schema_version: int
    name: str
    description: str = ''
    variables: list[Variable] = field(default_factory=list)
    provider: Optional[ProviderBinding] = None
    data: list[Block] = field(default_factory=list)
    resources: list[Block] = field(default_factory=list)
    outputs: list[Output] = field(default_factory=list)
    settings: DocumentSettings = field(default_factory=DocumentSettings)
    source_path: Optional[Path] = None

    @property
    def base_dir(self) -> Path:
        """Directory relative paths in the document are resolved against."""
        if self.source_path is not None:
            return self.source_path.parent
        return Path.cwd()

    @property
    def blocks(self) -> list[Block]:
        """Data sources followed by resources, in document order."""
        return list(self.data) + list(self.resources)

    def get_block(self, address: str) -> Block:
        """Get a block by address.

        Raises:
            KeyError: If address not declared
        """
        for block in self.blocks:
            if block.address == address:
                return block
        raise KeyError(address)

    def get_variable(self, name: str) -> Variable:
        for var in self.variables:
            if var.name == name:
                return var
        raise KeyError(name)

    def to_dict(self) -> dict:
        """Convert document to dictionary (for JSON serialization)."""
        result: dict[str, Any] = {
            'schema_version': self.schema_version,
            'name': self.name,
        }
        if self.description:
            result['description'] = self.description
        if self.variables:
            result['variables'] = [v.to_dict() for v in self.variables]
        if self.provider is not None:
            result['provider'] = self.provider.to_dict()
        if self.data:
            result['data'] = [b.to_dict() for b in self.data]
        if self.resources:
            result['resources'] = [b.to_dict() for b in self.resources]
        if self.outputs:
            result['outputs'] = [o.to_dict() for o in self.outputs]
        settings = self.settings.to_dict()
        if settings:
            result['settings'] = settings
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Document':
        """Create Document from dictionary.

        Args:
            data: Document data dictionary
            source_path: Optional source path for error messages

        Returns:
            Validated Document instance

        Raises:
            ConfigError: If document is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported document schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise ConfigError("Document missing required field: name")

        variables = []
        for i, var_data in enumerate(data.get('variables') or []):
            if 'name' not in var_data:
                raise ConfigError(f"Variable {i} missing required field: name")
            variables.append(Variable.from_dict(var_data))

        provider = None
        if data.get('provider'):
            provider = ProviderBinding.from_dict(data['provider'])

        data_blocks = _parse_blocks(data.get('data') or [], 'Data source', is_data=True)
        resources = _parse_blocks(data.get('resources') or [], 'Resource', is_data=False)

        outputs = []
        for i, out_data in enumerate(data.get('outputs') or []):
            if 'name' not in out_data:
                raise ConfigError(f"Output {i} missing required field: name")
            outputs.append(Output.from_dict(out_data))

        document = cls(
            schema_version=schema_version,
            name=data['name'],
            description=data.get('description', ''),
            variables=variables,
            provider=provider,
            data=data_blocks,
            resources=resources,
            outputs=outputs,
            settings=DocumentSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )
        _validate_document(document)
        return document

    @classmethod
    def from_json(cls, json_str: str) -> 'Document':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid document JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Document JSON must be an object")
        return cls.from_dict(data)


def _parse_blocks(items: list, label: str, is_data: bool) -> list[Block]:
    blocks = []
    for i, block_data in enumerate(items):
        if not isinstance(block_data, dict):
            raise ConfigError(f"{label} {i} must be a map")
        if 'type' not in block_data:
            raise ConfigError(f"{label} {i} missing required field: type")
        if 'name' not in block_data:
            raise ConfigError(f"{label} {i} ({block_data['type']}) missing required field: name")
        for key in ('type', 'name'):
            if not _NAME.match(str(block_data[key])):
                raise ConfigError(f"{label} {i} has invalid {key} '{block_data[key]}'")
        blocks.append(Block.from_dict(block_data, is_data=is_data))
    return blocks


def _validate_document(document: Document) -> None:
    """Validate document-wide invariants.

    Checks for:
    - Duplicate variable, output and block addresses
    - References to undeclared variables
    - Dangling references between declarations

    Cycles are detected when the dependency graph is built.

    Raises:
        ConfigError: If validation fails
    """
    seen: set[str] = set()
    for var in document.variables:
        if var.name in seen:
            raise ConfigError(f"Duplicate variable name: '{var.name}'")
        seen.add(var.name)
    var_names = seen

    addresses: set[str] = set()
    for block in document.blocks:
        if block.address in addresses:
            raise ConfigError(f"Duplicate declaration: '{block.address}'")
        addresses.add(block.address)

    output_names: set[str] = set()
    for output in document.outputs:
        if output.name in output_names:
            raise ConfigError(f"Duplicate output name: '{output.name}'")
        output_names.add(output.name)

    def _check_vars(where: str, value: Any) -> None:
        for ref in find_references(value):
            if ref.kind == 'var' and ref.address.split('.', 1)[1] not in var_names:
                raise ConfigError(f"{where} references undeclared variable '{ref.address}'")

    if document.provider is not None:
        _check_vars('Provider block', document.provider.config)

    for block in document.blocks:
        _check_vars(f"'{block.address}'", block.attributes)
        for address in block.references():
            if address not in addresses:
                raise ConfigError(f"'{block.address}' references unknown declaration '{address}'")

    for output in document.outputs:
        _check_vars(f"Output '{output.name}'", output.value)
        for address in output.references():
            if address not in addresses:
                raise ConfigError(f"Output '{output.name}' references unknown declaration '{address}'")


# -----------------------------------------------------------------------------
# Variable values
# -----------------------------------------------------------------------------

def _parse_scalar(raw: str) -> Any:
    """Parse a tfvars right-hand side: quoted string, number or bool."""
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        return json.loads(raw)
    if raw in ('true', 'false'):
        return raw == 'true'
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def parse_tfvars(text: str, source: str = '<string>') -> dict[str, Any]:
    """Parse simple `name = value` lines. Comments start with # or //.

    Raises:
        ConfigError: On a line that is not an assignment
    """
    values: dict[str, Any] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith('#') or stripped.startswith('//'):
            continue
        if '=' not in stripped:
            raise ConfigError(f"{source}:{lineno}: expected 'name = value'")
        name, raw = stripped.split('=', 1)
        name = name.strip()
        if not _NAME.match(name):
            raise ConfigError(f"{source}:{lineno}: invalid variable name '{name}'")
        try:
            values[name] = _parse_scalar(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{source}:{lineno}: invalid value: {e}")
    return values


def load_var_file(path: Path) -> dict[str, Any]:
    """Load variable values from a YAML, JSON or tfvars file.

    Raises:
        ConfigError: If file not found or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Variable file not found: {path}")
    if path.suffix in ('.tfvars', '.vars'):
        return parse_tfvars(path.read_text(encoding='utf-8'), source=str(path))
    if path.suffix == '.json':
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in variable file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Variable file {path} must be a JSON object")
        return data
    return parse_yaml(path)


def parse_var_assignments(assignments: list[str]) -> dict[str, Any]:
    """Parse --var name=value flags (values parsed like tfvars scalars)."""
    values: dict[str, Any] = {}
    for item in assignments:
        if '=' not in item:
            raise ConfigError(f"Invalid --var '{item}': expected name=value")
        name, raw = item.split('=', 1)
        try:
            values[name.strip()] = _parse_scalar(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid --var '{item}': {e}")
    return values


def bind_variables(
    document: Document,
    file_values: Optional[dict[str, Any]] = None,
    cli_values: Optional[dict[str, Any]] = None,
    environ: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """Resolve the value of every declared variable.

    Precedence (highest last): default, var file, environment
    (CONVERGE_VAR_<name>), CLI flags.

    Returns:
        Mapping of variable name to value

    Raises:
        ConfigError: If a required variable has no value or a value has the wrong type
    """
    file_values = file_values or {}
    cli_values = cli_values or {}
    environ = os.environ if environ is None else environ

    declared = {v.name for v in document.variables}
    for name in list(file_values) + list(cli_values):
        if name not in declared:
            logger.warning(f"Value provided for undeclared variable '{name}' (ignored)")

    bound: dict[str, Any] = {}
    missing: list[str] = []
    for var in document.variables:
        value: Any = _MISSING if var.required else var.default
        if var.name in file_values:
            value = file_values[var.name]
        env_key = f'{ENV_VAR_PREFIX}{var.name}'
        if env_key in environ:
            value = _parse_scalar(environ[env_key])
        if var.name in cli_values:
            value = cli_values[var.name]

        if value is _MISSING:
            missing.append(var.name)
            continue

        if var.type is not None:
            value = _check_type(var, value)
        bound[var.name] = value

    if missing:
        raise ConfigError(
            f"No value for required variable(s): {', '.join(missing)}. "
            f"Use --var-file, --var NAME=VALUE or {ENV_VAR_PREFIX}NAME"
        )
    return bound


def _check_type(var: Variable, value: Any) -> Any:
    expected = VARIABLE_TYPES[var.type]  # type: ignore[index]
    if var.type == 'string' and isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if var.type == 'number' and isinstance(value, bool):
        raise ConfigError(f"Variable '{var.name}' must be a number, got {value!r}")
    if not isinstance(value, expected):
        raise ConfigError(f"Variable '{var.name}' must be a {var.type}, got {value!r}")
    return value


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------

def load_document_file(path: Path) -> Document:
    """Load a document from a YAML or JSON file.

    Raises:
        ConfigError: If file not found or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Document file not found: {path}")

    if path.suffix == '.json':
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in document {path}: {e}")
    else:
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in document {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Document {path} must be a YAML object (dict)")

    return Document.from_dict(data, source_path=path.resolve())


def load_document(
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Document:
    """Load a document from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path (file or directory holding main.yaml)
    3. main.yaml in the current directory

    Raises:
        ConfigError: If document not found or invalid
    """
    if json_str:
        return Document.from_json(json_str)

    path = Path(file_path) if file_path else Path.cwd() / DEFAULT_DOCUMENT
    if path.is_dir():
        path = path / DEFAULT_DOCUMENT
    return load_document_file(path)
