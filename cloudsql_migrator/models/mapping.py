"""
Migration mapping models for the CloudSQL Migrator.

A MigrationMapping turns a strategy plus ordered source and target
instance lists into an ordered, conflict-free list of MigrationUnits.
All target naming decisions happen here; nothing downstream renames.
"""

import fnmatch
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from cloudsql_migrator.core.exceptions import ValidationError
from cloudsql_migrator.models.config import (
    ConflictResolution,
    ConnectionDescriptor,
    MappingStrategy,
    MigrationOptions,
    Role,
)
from cloudsql_migrator.utils.helpers import generate_unit_id, safe_identifier
from cloudsql_migrator.utils.logging import get_logger

logger = get_logger("mapping")


RECOMMENDED_STRATEGIES: Dict[str, MappingStrategy] = {
    '1:1': MappingStrategy.SIMPLE,
    'N:1': MappingStrategy.CONSOLIDATE,
    'N:N': MappingStrategy.VERSION_BASED,
    '1:N': MappingStrategy.DISTRIBUTE,
    'N:M': MappingStrategy.MANUAL_MAPPING,
}

STRATEGY_PATTERNS: Dict[MappingStrategy, Tuple[str, ...]] = {
    MappingStrategy.SIMPLE: ('1:1',),
    MappingStrategy.CONSOLIDATE: ('N:1', 'N:N', 'N:M'),
    MappingStrategy.DISTRIBUTE: ('1:N',),
    MappingStrategy.REPLICATE: ('1:N',),
    MappingStrategy.VERSION_BASED: ('N:N', 'N:M'),
    MappingStrategy.ROUND_ROBIN: ('N:N', 'N:M'),
    MappingStrategy.SPLIT_BY_DATABASE: ('1:N',),
    MappingStrategy.MANUAL_MAPPING: ('N:1', 'N:N', '1:N', 'N:M'),
    MappingStrategy.CUSTOM: ('1:1', 'N:1', 'N:N', '1:N', 'N:M'),
}

UNKNOWN_VERSION = "unknown"


def detect_pattern(source_count: int, target_count: int) -> str:
    """Classify a source/target count pair as 1:1, N:1, 1:N, N:N or N:M."""
    if source_count > 1 and target_count == 1:
        return 'N:1'
    if source_count == 1 and target_count > 1:
        return '1:N'
    if source_count > 1 and target_count > 1:
        return 'N:N' if source_count == target_count else 'N:M'
    return '1:1'


def recommended_strategy(pattern: str) -> MappingStrategy:
    return RECOMMENDED_STRATEGIES.get(pattern, MappingStrategy.SIMPLE)


def strategy_compatibility_warnings(strategy: MappingStrategy, pattern: str) -> List[str]:
    """Warnings for a strategy that does not suit the detected pattern."""
    if pattern in STRATEGY_PATTERNS.get(strategy, ()):
        return []
    return [
        f'Strategy "{strategy.value}" is not optimal for pattern "{pattern}"; '
        f'recommended: "{recommended_strategy(pattern).value}"'
    ]


def group_by_version(
    descriptors: Sequence[ConnectionDescriptor],
    versions: Optional[Dict[str, str]] = None
) -> "OrderedDict[str, List[ConnectionDescriptor]]":
    """Group instances by major engine version, in first-seen order."""
    versions = versions or {}
    grouped: "OrderedDict[str, List[ConnectionDescriptor]]" = OrderedDict()
    for descriptor in descriptors:
        engine_version = versions.get(descriptor.instance_label) or descriptor.engine_version
        major = descriptor.model_copy(update={'engine_version': engine_version}).major_version
        key = str(major) if major is not None else UNKNOWN_VERSION
        grouped.setdefault(key, []).append(descriptor)
    return grouped


@dataclass(frozen=True)
class DatabaseMapping:
    """One source database and where it lands on the target."""
    source_name: str
    target_name: str
    target_schema: Optional[str] = None
    merged: bool = False

    @property
    def renamed(self) -> bool:
        return self.source_name != self.target_name or self.target_schema is not None


@dataclass(frozen=True)
class MigrationUnit:
    """One resolved source to target migration job. Immutable."""
    id: str
    source: ConnectionDescriptor
    target: ConnectionDescriptor
    databases: Tuple[DatabaseMapping, ...]
    options: MigrationOptions
    strategy: MappingStrategy = MappingStrategy.SIMPLE
    version: Optional[str] = None

    @property
    def source_label(self) -> str:
        return self.source.instance_label

    @property
    def target_label(self) -> str:
        return self.target.instance_label

    @property
    def database_names(self) -> List[str]:
        return [database.source_name for database in self.databases]

    @property
    def target_names(self) -> List[str]:
        return [database.target_name for database in self.databases]


@dataclass(frozen=True)
class SplitRule:
    """Routes databases matching a glob pattern to a target."""
    pattern: str
    target: ConnectionDescriptor

    def matches(self, database: str) -> bool:
        return fnmatch.fnmatchcase(database, self.pattern)


@dataclass
class ManualMigration:
    """Caller-supplied source to target assignment."""
    source: ConnectionDescriptor
    target: ConnectionDescriptor
    databases: Optional[List[str]] = None
    target_names: Dict[str, str] = field(default_factory=dict)
    options: Optional[MigrationOptions] = None


@dataclass
class MappingValidation:
    """Outcome of validate_mapping()."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class _Assignment:
    source: ConnectionDescriptor
    target: ConnectionDescriptor
    databases: List[str]
    target_names: Dict[str, str] = field(default_factory=dict)
    options: Optional[MigrationOptions] = None
    version: Optional[str] = None


Resolver = Callable[["MigrationMapping", Dict[str, List[str]]], List[ManualMigration]]


class MigrationMapping:
    """
    Resolves a strategy into migration units.

    Args:
        strategy: one of the MappingStrategy values
        sources: ordered source instances
        targets: ordered target instances
        conflict_resolution: policy for duplicate target database names
        options: options applied to every produced unit
        version_mapping: major version -> target, for version-based
        split_rules: ordered rules, for split-by-database
        manual_migrations: explicit assignments, for manual-mapping/custom
        resolver: callable producing assignments, for manual-mapping/custom
    """

    def __init__(
        self,
        strategy: MappingStrategy = MappingStrategy.SIMPLE,
        sources: Optional[Sequence[ConnectionDescriptor]] = None,
        targets: Optional[Sequence[ConnectionDescriptor]] = None,
        conflict_resolution: Optional[ConflictResolution] = None,
        options: Optional[MigrationOptions] = None,
        version_mapping: Optional[Dict[str, ConnectionDescriptor]] = None,
        split_rules: Optional[Sequence[SplitRule]] = None,
        manual_migrations: Optional[Sequence[ManualMigration]] = None,
        resolver: Optional[Resolver] = None,
    ):
        self.strategy = MappingStrategy(strategy)
        self.sources = [s.with_role(Role.SOURCE) for s in (sources or [])]
        self.targets = [t.with_role(Role.TARGET) for t in (targets or [])]
        self.options = options or MigrationOptions()
        self.conflict_resolution = ConflictResolution(
            conflict_resolution or self.options.conflict_resolution
        )
        self.version_mapping = {
            str(version): target.with_role(Role.TARGET)
            for version, target in (version_mapping or {}).items()
        }
        self.split_rules = list(split_rules or [])
        self.manual_migrations = list(manual_migrations or [])
        self.resolver = resolver
        self.units: Optional[List[MigrationUnit]] = None
        self.warnings: List[str] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _all_sources(self) -> List[ConnectionDescriptor]:
        found = list(self.sources)
        found.extend(m.source for m in self.manual_migrations)
        return _unique_instances(found)

    def _all_targets(self) -> List[ConnectionDescriptor]:
        found = list(self.targets)
        found.extend(self.version_mapping.values())
        found.extend(rule.target for rule in self.split_rules)
        found.extend(m.target for m in self.manual_migrations)
        return _unique_instances(found)

    @property
    def mapping_type(self) -> str:
        return detect_pattern(len(self._all_sources()), len(self._all_targets()))

    @property
    def is_resolved(self) -> bool:
        return self.units is not None

    def sources_needing_discovery(self) -> List[ConnectionDescriptor]:
        """Sources whose database list must be discovered before resolving."""
        if self.strategy in (MappingStrategy.MANUAL_MAPPING, MappingStrategy.CUSTOM):
            candidates = [m.source for m in self.manual_migrations if not m.databases]
            if self.resolver:
                candidates.extend(self.sources)
        else:
            candidates = list(self.sources)
        return [s for s in _unique_instances(candidates) if not s.databases]

    def sources_needing_version(self) -> List[ConnectionDescriptor]:
        if self.strategy != MappingStrategy.VERSION_BASED:
            return []
        return [s for s in self.sources if s.major_version is None]

    def validate_mapping(self, discovered: Optional[Dict[str, List[str]]] = None) -> MappingValidation:
        """Check structure, and if database lists are known, full resolution."""
        errors: List[str] = []
        warnings: List[str] = []

        for descriptor in self.sources + self.targets:
            if not descriptor.instance:
                errors.append(f"{descriptor.role.value} instance name is required")
            if not descriptor.project:
                errors.append(f"{descriptor.role.value} project is required")

        errors.extend(self._structural_errors())
        warnings.extend(strategy_compatibility_warnings(self.strategy, self.mapping_type))
        if self.mapping_type == 'N:1' and self.conflict_resolution == ConflictResolution.FAIL:
            warnings.append(
                'N:1 mapping with "fail" conflict resolution aborts on duplicate database names'
            )
        if self.conflict_resolution == ConflictResolution.MERGE:
            warnings.append("merge does not verify schema compatibility between sources")

        if not errors and (discovered is not None or not self.sources_needing_discovery()):
            try:
                self._build_units(discovered or {}, {})
            except ValidationError as e:
                errors.append(e.message)

        return MappingValidation(valid=not errors, errors=errors, warnings=warnings)

    def _structural_errors(self) -> List[str]:
        errors = []
        strategy = self.strategy
        if strategy in (MappingStrategy.MANUAL_MAPPING, MappingStrategy.CUSTOM):
            if not self.manual_migrations and self.resolver is None:
                errors.append(f"{strategy.value} requires explicit migrations or a resolver")
            return errors

        if not self.sources:
            errors.append("At least one source instance is required")
        if strategy == MappingStrategy.SIMPLE:
            if len(self.sources) != 1 or len(self.targets) != 1:
                errors.append("simple requires exactly one source and one target")
        elif strategy in (MappingStrategy.DISTRIBUTE, MappingStrategy.REPLICATE):
            if len(self.sources) != 1:
                errors.append(f"{strategy.value} requires exactly one source")
            if not self.targets:
                errors.append("At least one target instance is required")
        elif strategy == MappingStrategy.VERSION_BASED:
            if not self.targets and not self.version_mapping:
                errors.append("version-based requires targets or a version mapping")
        elif strategy == MappingStrategy.SPLIT_BY_DATABASE:
            if not self.split_rules:
                errors.append("split-by-database requires at least one split rule")
        elif not self.targets:
            errors.append("At least one target instance is required")
        return errors

    def get_summary(self) -> Dict[str, object]:
        units = self.units or []
        return {
            'strategy': self.strategy.value,
            'mapping_type': self.mapping_type,
            'conflict_resolution': self.conflict_resolution.value,
            'sources': len(self._all_sources()),
            'targets': len(self._all_targets()),
            'resolved': self.is_resolved,
            'units': len(units),
            'databases': sum(len(unit.databases) for unit in units),
            'warnings': list(self.warnings),
        }

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        discovered: Optional[Dict[str, List[str]]] = None,
        versions: Optional[Dict[str, str]] = None
    ) -> List[MigrationUnit]:
        """
        Resolve the strategy into an ordered, conflict-free unit list.

        Args:
            discovered: database names per source instance label, for
                sources without an explicit database list
            versions: engine version per source instance label, for
                version-based grouping

        Raises:
            ValidationError: on structural problems, missing databases or
                a name conflict under the "fail" policy
        """
        if self.units is not None and discovered is None and versions is None:
            return list(self.units)

        errors = self._structural_errors()
        if errors:
            raise ValidationError(
                f"Invalid {self.strategy.value} mapping: " + "; ".join(errors),
                failed_checks=errors
            )

        units, warnings = self._build_units(discovered or {}, versions or {})
        self.units = units
        self.warnings = warnings
        logger.info(
            f"Resolved {self.strategy.value} mapping into {len(units)} unit(s)",
            extra={'strategy': self.strategy.value, 'units': len(units)}
        )
        return list(units)

    def _build_units(
        self,
        discovered: Dict[str, List[str]],
        versions: Dict[str, str]
    ) -> Tuple[List[MigrationUnit], List[str]]:
        assignments = self._assign(discovered, versions)
        return self._apply_conflict_resolution(assignments)

    def _databases_for(self, source: ConnectionDescriptor, discovered: Dict[str, List[str]]) -> List[str]:
        if source.databases:
            return list(source.databases)
        if source.instance_label in discovered:
            names = list(discovered[source.instance_label])
            if names:
                return names
        raise ValidationError(
            f"No databases selected for source {source.instance_label}",
            failed_checks=[f"databases:{source.instance_label}"]
        )

    def _assign(self, discovered: Dict[str, List[str]], versions: Dict[str, str]) -> List[_Assignment]:
        strategy = self.strategy

        if strategy == MappingStrategy.SIMPLE:
            source, target = self.sources[0], self.targets[0]
            return [_Assignment(source, target, self._databases_for(source, discovered))]

        if strategy == MappingStrategy.CONSOLIDATE:
            target = self.targets[0]
            return [
                _Assignment(source, target, self._databases_for(source, discovered))
                for source in self.sources
            ]

        if strategy == MappingStrategy.REPLICATE:
            source = self.sources[0]
            names = self._databases_for(source, discovered)
            return [_Assignment(source, target, list(names)) for target in self.targets]

        if strategy == MappingStrategy.DISTRIBUTE:
            return self._assign_distribute(discovered)

        if strategy == MappingStrategy.ROUND_ROBIN:
            return [
                _Assignment(source, self.targets[index % len(self.targets)],
                            self._databases_for(source, discovered))
                for index, source in enumerate(self.sources)
            ]

        if strategy == MappingStrategy.VERSION_BASED:
            return self._assign_by_version(discovered, versions)

        if strategy == MappingStrategy.SPLIT_BY_DATABASE:
            return self._assign_split(discovered)

        return self._assign_manual(discovered)

    def _assign_distribute(self, discovered: Dict[str, List[str]]) -> List[_Assignment]:
        source = self.sources[0]
        assignments = []

        if any(target.databases for target in self.targets):
            if source.databases or source.instance_label in discovered:
                available = set(self._databases_for(source, discovered))
            else:
                available = {name for target in self.targets for name in (target.databases or [])}
            for target in self.targets:
                subset = list(target.databases or [])
                missing = [name for name in subset if name not in available]
                if missing:
                    raise ValidationError(
                        f"Databases {missing} requested for {target.instance_label} "
                        f"do not exist on {source.instance_label}",
                        failed_checks=[f"distribute:{target.instance_label}"]
                    )
                if subset:
                    assignments.append(_Assignment(source, target, subset))
            return assignments

        names = self._databases_for(source, discovered)
        buckets: "OrderedDict[int, List[str]]" = OrderedDict((i, []) for i in range(len(self.targets)))
        for index, name in enumerate(sorted(names)):
            buckets[index % len(self.targets)].append(name)
        for index, subset in buckets.items():
            if subset:
                assignments.append(_Assignment(source, self.targets[index], subset))
        return assignments

    def _assign_by_version(self, discovered: Dict[str, List[str]], versions: Dict[str, str]) -> List[_Assignment]:
        grouped = group_by_version(self.sources, versions)
        if self.version_mapping:
            targets_by_version = dict(self.version_mapping)
            missing = [v for v in grouped if v not in targets_by_version]
            if missing:
                raise ValidationError(
                    f"No target mapped for version(s): {', '.join(missing)}",
                    failed_checks=[f"version:{v}" for v in missing]
                )
        else:
            ordered = sorted(grouped, key=_version_sort_key)
            if len(ordered) > len(self.targets):
                raise ValidationError(
                    f"{len(ordered)} version groups but only {len(self.targets)} target(s)",
                    failed_checks=["version-groups"]
                )
            targets_by_version = dict(zip(ordered, self.targets))

        assignments = []
        for source in self.sources:
            version = next(v for v, members in grouped.items() if source in members)
            assignments.append(_Assignment(
                source,
                targets_by_version[version],
                self._databases_for(source, discovered),
                version=version,
            ))
        return assignments

    def _assign_split(self, discovered: Dict[str, List[str]]) -> List[_Assignment]:
        assignments = []
        for source in self.sources:
            per_target: "OrderedDict[Tuple[str, str], _Assignment]" = OrderedDict()
            unmatched = []
            for name in self._databases_for(source, discovered):
                rule = next((r for r in self.split_rules if r.matches(name)), None)
                if rule is None:
                    unmatched.append(name)
                    continue
                key = rule.target.instance_key
                if key not in per_target:
                    per_target[key] = _Assignment(source, rule.target.with_role(Role.TARGET), [])
                per_target[key].databases.append(name)
            if unmatched:
                raise ValidationError(
                    f"No split rule matches database(s) {unmatched} on {source.instance_label}",
                    failed_checks=[f"split:{name}" for name in unmatched]
                )
            assignments.extend(per_target.values())
        return assignments

    def _assign_manual(self, discovered: Dict[str, List[str]]) -> List[_Assignment]:
        migrations = list(self.manual_migrations)
        if self.resolver is not None:
            migrations.extend(self.resolver(self, discovered))
        if not migrations:
            raise ValidationError(
                f"{self.strategy.value} mapping produced no migrations",
                failed_checks=["manual-migrations"]
            )
        assignments = []
        for migration in migrations:
            source = migration.source.with_role(Role.SOURCE)
            if migration.databases:
                names = list(migration.databases)
            else:
                names = self._databases_for(source, discovered)
            assignments.append(_Assignment(
                source,
                migration.target.with_role(Role.TARGET),
                names,
                target_names=dict(migration.target_names),
                options=migration.options,
            ))
        return assignments

    def _apply_conflict_resolution(
        self,
        assignments: List[_Assignment]
    ) -> Tuple[List[MigrationUnit], List[str]]:
        policy = self.conflict_resolution
        warnings: List[str] = []

        def wanted(assignment: _Assignment, name: str) -> str:
            return assignment.target_names.get(name, name)

        occurrences: Counter = Counter()
        contributors: Dict[Tuple[Tuple[str, str], str], List[str]] = {}
        planned: Dict[Tuple[str, str], Set[str]] = {}
        for assignment in assignments:
            target_key = assignment.target.instance_key
            for name in assignment.databases:
                target_name = wanted(assignment, name)
                occurrences[(target_key, target_name)] += 1
                contributors.setdefault((target_key, target_name), []).append(
                    assignment.source.instance_label
                )
                planned.setdefault(target_key, set()).add(target_name)

        conflicts = {key for key, count in occurrences.items() if count > 1}
        if conflicts and policy == ConflictResolution.FAIL:
            described = sorted(f"{name} on {key[0]}:{key[1]}" for key, name in conflicts)
            raise ValidationError(
                "Database name conflict: " + ", ".join(described),
                failed_checks=[f"conflict:{item}" for item in described]
            )

        used: Set[Tuple[Tuple[str, str], str, Optional[str]]] = set()
        seen_count: Counter = Counter()
        units: List[MigrationUnit] = []

        for index, assignment in enumerate(assignments):
            target_key = assignment.target.instance_key
            mappings = []
            for name in assignment.databases:
                base = wanted(assignment, name)
                key = (target_key, base)
                target_name, schema, merged = base, None, False

                if key in conflicts:
                    seen_count[key] += 1
                    if policy == ConflictResolution.PREFIX:
                        target_name = f"{assignment.source.instance}_{base}"
                    elif policy == ConflictResolution.SUFFIX and seen_count[key] > 1:
                        target_name = self._next_suffix(base, target_key, planned, used)
                    elif policy == ConflictResolution.MERGE:
                        merged = True
                    elif policy == ConflictResolution.RENAME_SCHEMA:
                        schema = f"{safe_identifier(assignment.source.instance)}_{safe_identifier(base)}"

                identity = (target_key, target_name, schema)
                if identity in used and not merged:
                    raise ValidationError(
                        f"Target database {target_name} on {target_key[0]}:{target_key[1]} "
                        f"is still ambiguous after applying {policy.value}",
                        failed_checks=[f"conflict:{target_name}"]
                    )
                used.add(identity)
                mappings.append(DatabaseMapping(name, target_name, schema, merged))

            options = assignment.options or self.options
            if any(m.merged or m.target_schema for m in mappings) and options.use_clean:
                options = options.model_copy(update={'use_clean': False})
            options = options.model_copy(update={'conflict_resolution': policy})

            units.append(MigrationUnit(
                id=generate_unit_id(index, assignment.source.instance, assignment.target.instance),
                source=assignment.source,
                target=assignment.target,
                databases=tuple(mappings),
                options=options,
                strategy=self.strategy,
                version=assignment.version,
            ))

        if policy == ConflictResolution.MERGE:
            for (target_key, name), sources in contributors.items():
                if len(sources) > 1:
                    warnings.append(
                        f"Database {name} on {target_key[0]}:{target_key[1]} merges data from "
                        f"{', '.join(sources)}; schema compatibility is not verified"
                    )

        return units, warnings

    @staticmethod
    def _next_suffix(base: str, target_key, planned: Dict, used: Set) -> str:
        taken = planned.get(target_key, set())
        counter = 2
        while True:
            candidate = f"{base}_{counter}"
            if candidate not in taken and (target_key, candidate, None) not in used:
                return candidate
            counter += 1


def _unique_instances(descriptors: Sequence[ConnectionDescriptor]) -> List[ConnectionDescriptor]:
    seen = set()
    unique = []
    for descriptor in descriptors:
        if descriptor.instance_key not in seen:
            seen.add(descriptor.instance_key)
            unique.append(descriptor)
    return unique


def _version_sort_key(version: str):
    return (version == UNKNOWN_VERSION, int(version) if version.isdigit() else 0, version)
