"""Label and status mapping tables"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from jirasync.exceptions import ConfigurationError


@dataclass(frozen=True)
class MappingRule:
    match: str
    result: str


@dataclass(frozen=True)
class MappingTable:
    """Ordered rules plus a default result.

    The first rule whose condition holds wins. Inputs that match nothing resolve
    to the default, so resolution itself never fails; a missing default is
    rejected when the table is built.
    """

    name: str
    rules: Tuple[MappingRule, ...]
    default: str
    case_sensitive: bool = True

    def __post_init__(self):
        if not self.default:
            raise ConfigurationError(f"Mapping table '{self.name}' has no default value")

    @classmethod
    def from_pairs(
        cls,
        name: str,
        pairs: Iterable[Tuple[str, str]],
        default: str,
        *,
        case_sensitive: bool = True,
    ) -> "MappingTable":
        rules = tuple(MappingRule(match=m, result=r) for m, r in pairs)
        return cls(name=name, rules=rules, default=default, case_sensitive=case_sensitive)

    def _norm(self, value: str) -> str:
        return value if self.case_sensitive else value.casefold()

    @property
    def results(self) -> Tuple[str, ...]:
        """Every value this table can produce, default included."""
        values = [rule.result for rule in self.rules]
        if self.default not in values:
            values.append(self.default)
        return tuple(values)

    def resolve_labels(self, labels: Iterable[str]) -> str:
        """Resolve from a label set: a rule matches when its label is present."""
        present = {self._norm(label) for label in labels or ()}
        for rule in self.rules:
            if self._norm(rule.match) in present:
                return rule.result
        return self.default

    def resolve_value(self, value: Optional[str]) -> str:
        """Resolve from a single value: a rule matches on string equality."""
        if value is None:
            return self.default
        wanted = self._norm(value)
        for rule in self.rules:
            if self._norm(rule.match) == wanted:
                return rule.result
        return self.default
