"""Planner: diff desired state against last-known actual state.

Produces a Plan, an ordered list of Changes. Deletions of resources that
left the document come first (dependents before dependencies), followed
by every declared block in create order.

Actions:
    create    resource not in state (or deleted outside the engine)
    update    attributes differ, none of them force replacement
    replace   a differing attribute is force-new for the resource type
    delete    resource in state, no longer declared
    read      data source read during apply (inputs unknown at plan time)
    no-op     nothing to do (data sources read at plan time are no-ops)
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import format_value
from config import ConfigError
from document import Document
from engine.graph import DependencyGraph
from engine.state import ResourceState, State
from providers.base import ProviderContext, ProviderRegistry
from references import contains_unknown, find_references, make_lookup, resolve

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DELETE = 'delete'
READ = 'read'
NOOP = 'no-op'

MUTATING_ACTIONS = (CREATE, UPDATE, REPLACE, DELETE)

_SYMBOLS = {
    CREATE: '+',
    UPDATE: '~',
    REPLACE: '-/+',
    DELETE: '-',
    READ: '<=',
    NOOP: ' ',
}


@dataclass
class Change:
    """One planned operation.

    Attributes:
        address: Block address
        action: One of the action constants
        type: Block type
        is_data: True for data sources
        before: Attributes recorded in state (empty for create)
        after: Planned attributes; unknown values are UNKNOWN
        changed: Attribute keys that differ between before and after
        reason: Human-readable explanation (replacement trigger, drift)
        dependencies: Addresses that must converge first
    """
    address: str
    action: str
    type: str
    is_data: bool = False
    before: dict = field(default_factory=dict)
    after: dict = field(default_factory=dict)
    changed: list[str] = field(default_factory=list)
    reason: str = ''
    dependencies: list[str] = field(default_factory=list)

    @property
    def is_mutation(self) -> bool:
        return self.action in MUTATING_ACTIONS

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
        }
        if self.changed:
            d['changed'] = self.changed
        if self.reason:
            d['reason'] = self.reason
        return d


@dataclass
class Plan:
    """Ordered changes plus the values needed to apply them.

    Attributes:
        document: The planned document
        changes: Ordered changes
        variables: Bound variable values
        contexts: Provider contexts by provider name
        data_values: Data source values read at plan time, by address
        outputs: Planned output values (may be UNKNOWN)
    """
    document: Document
    changes: list[Change] = field(default_factory=list)
    variables: dict = field(default_factory=dict)
    contexts: dict[str, ProviderContext] = field(default_factory=dict)
    data_values: dict[str, dict] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return any(c.is_mutation for c in self.changes)

    def get(self, address: str) -> Change:
        for change in self.changes:
            if change.address == address:
                return change
        raise KeyError(address)

    def counts(self) -> dict[str, int]:
        counts = {action: 0 for action in MUTATING_ACTIONS}
        for change in self.changes:
            if change.action in counts:
                counts[change.action] += 1
        return counts

    def summary(self) -> str:
        if not self.has_changes:
            return "No changes. Infrastructure matches the document."
        c = self.counts()
        return (
            f"Plan: {c[CREATE] + c[REPLACE]} to add, {c[UPDATE]} to change, "
            f"{c[DELETE] + c[REPLACE]} to destroy."
        )

    def render(self) -> str:
        """Human-readable plan, one block per non-trivial change."""
        lines: list[str] = []
        for change in self.changes:
            if change.action == NOOP:
                continue
            header = f"  {_SYMBOLS[change.action]} {change.address} ({change.action})"
            if change.reason:
                header += f": {change.reason}"
            lines.append(header)
            if change.action in (CREATE, READ):
                for key in sorted(change.after):
                    lines.append(f"      {key} = {format_value(change.after[key])}")
            elif change.action in (UPDATE, REPLACE):
                for key in change.changed:
                    before = format_value(change.before.get(key))
                    after = format_value(change.after.get(key))
                    lines.append(f"      {key}: {before} -> {after}")
        if lines:
            lines.append('')
        lines.append(self.summary())
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'document': self.document.name,
            'has_changes': self.has_changes,
            'counts': self.counts(),
            'changes': [c.to_dict() for c in self.changes if c.action != NOOP],
        }


def resolve_provider_config(document: Document, variables: dict) -> dict:
    """Resolve the provider block; it may reference variables only.

    Raises:
        ConfigError: If the block references a declaration
    """
    if document.provider is None:
        return {}
    for ref in find_references(document.provider.config):
        if ref.kind != 'var':
            raise ConfigError(
                f"Provider block may only reference variables, found '${{{ref.expression}}}'"
            )
    return resolve(document.provider.config, make_lookup(variables, {}, strict=True))


def build_contexts(
    document: Document,
    registry: ProviderRegistry,
    variables: dict,
    data_dir: Optional[Path] = None,
) -> dict[str, ProviderContext]:
    """Build a ProviderContext for every provider the document uses.

    Raises:
        ConfigError: If a block needs a provider that has no binding, or
            provider configuration is incomplete
    """
    bound_name = document.provider.name if document.provider else None
    if bound_name is not None:
        registry.get(bound_name)
    bound_config = resolve_provider_config(document, variables)

    contexts: dict[str, ProviderContext] = {}
    for block in document.blocks:
        provider = registry.provider_for(block.type, block.is_data)
        if provider.name in contexts:
            continue
        if provider.name == bound_name:
            config = bound_config
        elif provider.required_config:
            raise ConfigError(
                f"'{block.address}' needs a provider block for '{provider.name}'"
            )
        else:
            config = {}
        contexts[provider.name] = provider.context(config, document.base_dir, data_dir)
    return contexts


class Planner:
    """Computes a Plan for a document against a State.

    Attributes:
        document: Desired state
        graph: Dependency graph of the document
        registry: Provider registry
        state: Last-known actual state
        variables: Bound variable values
        data_dir: Directory providers may keep local data in
        refresh: Read actual state back from providers before diffing
    """

    def __init__(
        self,
        document: Document,
        graph: DependencyGraph,
        registry: ProviderRegistry,
        state: State,
        variables: dict,
        data_dir: Optional[Path] = None,
        refresh: bool = True,
    ):
        self.document = document
        self.graph = graph
        self.registry = registry
        self.state = state
        self.variables = variables
        self.data_dir = data_dir
        self.refresh = refresh

    def validate(self) -> list[str]:
        """Check every block and reference against provider schemas.

        Returns:
            List of error messages (empty = valid)
        """
        errors: list[str] = []
        if self.document.provider is not None and \
                self.document.provider.name not in self.registry.providers:
            errors.append(f"Unknown provider '{self.document.provider.name}'")

        schemas = {}
        for block in self.document.blocks:
            try:
                provider = self.registry.provider_for(block.type, block.is_data)
            except ConfigError as e:
                errors.append(f"{block.address}: {e}")
                continue
            types = provider.data_source_types if block.is_data else provider.resource_types
            schemas[block.address] = types[block.type]
            for message in types[block.type].validate(block.attributes):
                errors.append(f"{block.address}: {message}")

        def _check_refs(where: str, value: Any) -> None:
            for ref in find_references(value):
                if ref.kind == 'var' or ref.address not in schemas:
                    continue
                if ref.path[0] not in schemas[ref.address].attribute_names:
                    errors.append(
                        f"{where}: '{ref.address}' has no attribute '{ref.path[0]}'"
                    )

        for block in self.document.blocks:
            _check_refs(block.address, block.attributes)
        for output in self.document.outputs:
            _check_refs(f"output {output.name}", output.value)
        return errors

    def _refresh(self, contexts: dict[str, ProviderContext]) -> dict[str, Optional[dict]]:
        """Read every recorded resource back from its provider."""
        actual: dict[str, Optional[dict]] = {}
        for address, rs in self.state.resources.items():
            try:
                rtype = self.registry.resource_type(rs.type)
            except ConfigError:
                logger.warning(f"Cannot refresh '{address}': unknown type '{rs.type}'")
                continue
            ctx = contexts.get(rtype_provider(self.registry, rs.type))
            if ctx is None:
                continue
            actual[address] = rtype.read(rs.id, ctx)
            if actual[address] is None:
                logger.info(f"[refresh] {address} no longer exists")
        return actual

    def plan(self) -> Plan:
        """Compute the plan.

        Raises:
            ConfigError: On validation failure
            ProviderError: If a data source read or refresh fails
        """
        errors = self.validate()
        if errors:
            raise ConfigError('Document validation failed:\n  ' + '\n  '.join(errors))

        contexts = build_contexts(self.document, self.registry, self.variables, self.data_dir)
        contexts.update(self._state_contexts(contexts))

        actual = self._refresh(contexts) if self.refresh else {}

        plan = Plan(document=self.document, variables=dict(self.variables), contexts=contexts)
        values: dict[str, dict] = {}
        lookup = make_lookup(self.variables, values)

        orphans = [rs for address, rs in self.state.resources.items() if address not in self.graph]
        plan.changes.extend(self._plan_deletes(orphans, reason='no longer in document'))

        for node in self.graph.create_order():
            block = node.block
            provider_name = rtype_provider(self.registry, block.type, block.is_data)
            ctx = contexts[provider_name]
            deps = self.graph.dependencies(block.address)
            resolved = resolve(block.attributes, lookup)

            if block.is_data:
                dtype = self.registry.data_source_type(block.type)
                type_errors = dtype.validate(resolved)
                if type_errors:
                    raise ConfigError(f"{block.address}: " + '; '.join(type_errors))
                if contains_unknown(resolved):
                    plan.changes.append(Change(
                        address=block.address, action=READ, type=block.type, is_data=True,
                        after=resolved, reason='inputs known after apply', dependencies=deps,
                    ))
                    continue
                computed = dtype.read(resolved, ctx)
                values[block.address] = {**resolved, **computed}
                plan.data_values[block.address] = values[block.address]
                plan.changes.append(Change(
                    address=block.address, action=NOOP, type=block.type, is_data=True,
                    after=values[block.address], dependencies=deps,
                ))
                continue

            rtype = self.registry.resource_type(block.type)
            type_errors = rtype.validate(resolved)
            if type_errors:
                raise ConfigError(f"{block.address}: " + '; '.join(type_errors))
            resolved.update(rtype.derive(resolved, ctx))

            change = self._diff(block.address, block.type, resolved, actual, rtype.force_new)
            change.dependencies = deps
            plan.changes.append(change)

            prior = self.state.get(block.address)
            if change.action == NOOP and prior is not None:
                values[block.address] = {**resolved, **prior.computed}
            elif change.action != REPLACE:
                # Computed attributes stay unknown until apply
                values[block.address] = dict(resolved)
            # A replacement stays absent from values: every reference to it is unknown

        for output in self.document.outputs:
            plan.outputs[output.name] = resolve(output.value, lookup)

        logger.debug(f"Planned {len(plan.changes)} changes for '{self.document.name}'")
        return plan

    def _diff(
        self,
        address: str,
        rtype_name: str,
        desired: dict,
        actual: dict[str, Optional[dict]],
        force_new: tuple,
    ) -> Change:
        prior = self.state.get(address)
        if prior is None:
            return Change(address=address, action=CREATE, type=rtype_name, after=desired)

        before = dict(prior.attributes)
        if self.refresh and address in actual:
            record = actual[address]
            if record is None:
                return Change(
                    address=address, action=CREATE, type=rtype_name, after=desired,
                    reason='deleted outside of the engine',
                )
            drifted = [k for k in before if k in record and record[k] != before[k]]
            if drifted:
                logger.info(f"[refresh] {address} drifted: {', '.join(sorted(drifted))}")
            before = {k: record.get(k, v) for k, v in before.items()}

        keys = sorted(set(before) | set(desired))
        changed = [k for k in keys if desired.get(k) != before.get(k)]
        if not changed:
            return Change(address=address, action=NOOP, type=rtype_name, before=before, after=desired)

        forcing = [k for k in changed if k in force_new]
        if forcing:
            return Change(
                address=address, action=REPLACE, type=rtype_name, before=before, after=desired,
                changed=changed, reason=f"{', '.join(forcing)} forces replacement",
            )
        return Change(
            address=address, action=UPDATE, type=rtype_name, before=before, after=desired,
            changed=changed,
        )

    def plan_destroy(self) -> Plan:
        """Plan deletion of every resource recorded in state, dependents first.

        Raises:
            ConfigError: If provider configuration cannot be resolved
        """
        plan = Plan(
            document=self.document,
            variables=dict(self.variables),
            contexts=self._state_contexts({}),
        )
        plan.changes = self._plan_deletes(list(self.state.resources.values()))
        return plan

    def _state_contexts(self, contexts: dict[str, ProviderContext]) -> dict[str, ProviderContext]:
        """Contexts for providers that only resources in state still need."""
        extra: dict[str, ProviderContext] = {}
        bound_name = self.document.provider.name if self.document.provider else None
        for rs in self.state.resources.values():
            name = rs.provider
            if not name or name in contexts or name in extra:
                continue
            try:
                provider = self.registry.get(name)
            except ConfigError:
                continue
            if provider.required_config and name != bound_name:
                logger.warning(f"No provider block for '{name}'; cannot reach '{rs.address}'")
                continue
            config = resolve_provider_config(self.document, self.variables) if name == bound_name else {}
            extra[name] = provider.context(config, self.document.base_dir, self.data_dir)
        return extra

    def _plan_deletes(self, resources: list[ResourceState], reason: str = '') -> list[Change]:
        """Delete changes for resources, dependents first."""
        targets = {rs.address: rs for rs in resources}
        ordered: list[str] = []
        visiting: set[str] = set()

        # Post-order over "is depended on by" edges restricted to targets
        dependents: dict[str, list[str]] = {a: [] for a in targets}
        for address, rs in targets.items():
            for dep in rs.dependencies:
                if dep in dependents:
                    dependents[dep].append(address)

        def _visit(address: str) -> None:
            if address in ordered or address in visiting:
                return
            visiting.add(address)
            for dependent in sorted(dependents[address]):
                _visit(dependent)
            visiting.discard(address)
            ordered.append(address)

        for address in sorted(targets):
            _visit(address)

        return [
            Change(
                address=address, action=DELETE, type=targets[address].type,
                before=dict(targets[address].attributes),
                reason=reason,
                dependencies=list(targets[address].dependencies),
            )
            for address in ordered
        ]


def rtype_provider(registry: ProviderRegistry, kind: str, is_data: bool = False) -> str:
    """Name of the provider implementing a block kind."""
    return registry.provider_for(kind, is_data).name
