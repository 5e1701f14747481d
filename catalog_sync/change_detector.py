import hashlib
import json
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

NEW = 'new'
CHANGED = 'changed'
UNCHANGED = 'unchanged'
REMOVED = 'removed'


def compute_hash(data) -> str:
    """Compute a stable SHA-256 hash of a JSON-serialisable value."""
    serialized = json.dumps(data, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()


def compute_family_hash(raw_variants: list[dict]) -> str:
    """Content hash of a family; independent of the order of its variants."""
    serialized = sorted(
        json.dumps(variant, sort_keys=True, ensure_ascii=False) for variant in raw_variants
    )
    return hashlib.sha256(''.join(serialized).encode('utf-8')).hexdigest()


@dataclass
class FamilyChange:
    family_key: str
    status: str
    content_hash: str = ''
    variants: list = field(default_factory=list)


@dataclass
class ChangeReport:
    changes: list = field(default_factory=list)

    def _with_status(self, status):
        return [c for c in self.changes if c.status == status]

    @property
    def new(self) -> list[FamilyChange]:
        return self._with_status(NEW)

    @property
    def changed(self) -> list[FamilyChange]:
        return self._with_status(CHANGED)

    @property
    def unchanged(self) -> list[FamilyChange]:
        return self._with_status(UNCHANGED)

    @property
    def removed(self) -> list[FamilyChange]:
        return self._with_status(REMOVED)

    @property
    def to_process(self) -> list[FamilyChange]:
        return [c for c in self.changes if c.status in (NEW, CHANGED)]

    @property
    def efficiency(self) -> float:
        """Percentage of families skipped as unchanged."""
        considered = len([c for c in self.changes if c.status != REMOVED])
        if not considered:
            return 0.0
        return round(100.0 * len(self.unchanged) / considered, 1)


def classify_families(groups: dict, stored_hashes: dict, feed_complete: bool = True) -> ChangeReport:
    """
    Classify each family group against the stored `{family_key: content_hash}`.

    A group with zero variants is `removed`. When `feed_complete` is True,
    stored families missing from `groups` are `removed` as well; after a
    partial download nothing is inferred from absence.
    """
    report = ChangeReport()
    for family_key, variants in groups.items():
        if not variants:
            report.changes.append(FamilyChange(family_key, REMOVED))
            continue
        content_hash = compute_family_hash(variants)
        stored = stored_hashes.get(family_key)
        if stored is None:
            status = NEW
        elif stored == content_hash:
            status = UNCHANGED
        else:
            status = CHANGED
        report.changes.append(FamilyChange(family_key, status, content_hash, variants))

    if feed_complete:
        for family_key in stored_hashes:
            if family_key not in groups:
                report.changes.append(FamilyChange(family_key, REMOVED))
    elif set(stored_hashes) - set(groups):
        logger.warning(
            "Feed incomplete; removal detection suspended for %d stored families.",
            len(set(stored_hashes) - set(groups)),
        )

    logger.info(
        "Change detection: new=%d, changed=%d, unchanged=%d, removed=%d (%.1f%% skipped).",
        len(report.new), len(report.changed), len(report.unchanged), len(report.removed),
        report.efficiency,
    )
    return report
