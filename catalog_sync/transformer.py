import logging
from dataclasses import dataclass, field
from typing import Optional

from django.conf import settings

from . import extraction
from .change_detector import compute_family_hash
from .errors import ValidationSyncError

logger = logging.getLogger(__name__)

SIZE_PRIORITY = {
    'XXS': 0, 'XS': 1, 'S': 2, 'M': 3, 'L': 4, 'XL': 5,
    'XXL': 6, '2XL': 6, 'XXXL': 7, '3XL': 7, '4XL': 8, '5XL': 9,
}


@dataclass
class VariantRecord:
    sku: str
    name: str = ''
    color: str = ''
    hex_color: str = ''
    color_code: str = ''
    size: str = ''
    material: str = ''
    dimensions: dict = field(default_factory=dict)
    primary_image: Optional[str] = None
    gallery_images: list = field(default_factory=list)
    price_tiers: list = field(default_factory=list)
    is_primary_for_color: bool = False

    @property
    def color_group(self) -> str:
        return self.color_code or self.color.lower()

    @property
    def image_urls(self) -> dict:
        return {'primary': self.primary_image, 'gallery': list(self.gallery_images)}


@dataclass
class FamilyRecord:
    supplier_code: str
    family_key: str
    name: dict
    content_hash: str
    description: dict = field(default_factory=dict)
    short_description: dict = field(default_factory=dict)
    material: dict = field(default_factory=dict)
    brand: str = ''
    category: str = ''
    country_of_origin: str = ''
    delivery_time: str = ''
    price_tiers: list = field(default_factory=list)
    dimensions: dict = field(default_factory=dict)
    variants: list = field(default_factory=list)

    @property
    def document_id(self) -> str:
        return make_document_id(self.supplier_code, self.family_key)

    @property
    def available_colors(self) -> list[str]:
        return _unique(v.color for v in self.variants)

    @property
    def available_sizes(self) -> list[str]:
        return _unique(v.size for v in self.variants)


def _unique(values) -> list:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def make_document_id(supplier_code: str, family_key: str) -> str:
    return f"{supplier_code}-{family_key}"


def group_by_family(raw_variants: list[dict]) -> tuple[dict, int]:
    """
    Group raw variants by family key, keeping feed order.

    Returns `(groups, skipped)`; variants without SKU or family key are
    skipped and counted.
    """
    groups = {}
    skipped = 0
    for raw in raw_variants:
        sku = extraction.extract_text('sku', raw)
        if not sku:
            logger.warning("Skipping variant without SKU.")
            skipped += 1
            continue
        family_key = extraction.extract_text('family_key', raw)
        if not family_key:
            logger.warning("Skipping variant %s – no family key.", sku)
            skipped += 1
            continue
        groups.setdefault(family_key, []).append(raw)
    return groups, skipped


def transform_variant(raw: dict) -> Optional[VariantRecord]:
    sku = extraction.extract_text('sku', raw)
    if not sku:
        logger.warning("Skipping variant without SKU.")
        return None
    return VariantRecord(
        sku=sku,
        name=extraction.extract_text('name', raw),
        color=extraction.extract_text('color', raw),
        hex_color=extraction.extract_text('hex_color', raw),
        color_code=extraction.extract_text('color_code', raw),
        size=extraction.extract_text('size', raw),
        material=extraction.extract_text('material', raw),
        dimensions=extraction.extract_dimensions(raw),
        primary_image=extraction.extract_primary_image(raw),
        gallery_images=extraction.extract_gallery_images(raw),
        price_tiers=extraction.extract_price_tiers(raw),
    )


def _size_rank(size: str) -> int:
    return SIZE_PRIORITY.get(size.strip().upper(), len(SIZE_PRIORITY))


def assign_primary_for_color(variants: list[VariantRecord]) -> None:
    """Mark the smallest-size variant of every color as that color's primary."""
    by_color = {}
    for variant in variants:
        variant.is_primary_for_color = False
        by_color.setdefault(variant.color_group, []).append(variant)
    for members in by_color.values():
        members.sort(key=lambda v: _size_rank(v.size))
        members[0].is_primary_for_color = True


def check_primary_for_color(variants: list[VariantRecord]) -> None:
    counts = {}
    for variant in variants:
        counts.setdefault(variant.color_group, 0)
        if variant.is_primary_for_color:
            counts[variant.color_group] += 1
    broken = {color: n for color, n in counts.items() if n != 1}
    if broken:
        raise ValidationSyncError(f"Expected exactly one primary variant per color, got {broken}")


def _first(field_name: str, raw_variants: list[dict], locales) -> dict:
    for raw in raw_variants:
        value = extraction.extract_multilingual(field_name, raw, locales)
        if value:
            return value
    return {}


def _first_text(field_name: str, raw_variants: list[dict]) -> str:
    for raw in raw_variants:
        value = extraction.extract_text(field_name, raw)
        if value:
            return value
    return ''


def transform_family(supplier_code: str, family_key: str, raw_variants: list[dict],
                     locales=None) -> Optional[FamilyRecord]:
    """
    Transform the raw variants of one family into a FamilyRecord.

    Returns None (and logs a warning) when no variant carries a name.
    """
    locales = locales or settings.SYNC_LOCALES
    name = _first('name', raw_variants, locales)
    if not name:
        logger.warning("Skipping family %s/%s – no name on any variant.", supplier_code, family_key)
        return None

    variants = []
    seen_skus = set()
    for raw in raw_variants:
        variant = transform_variant(raw)
        if variant is None:
            continue
        if variant.sku in seen_skus:
            logger.warning("Duplicate SKU %s in family %s – keeping first occurrence.", variant.sku, family_key)
            continue
        seen_skus.add(variant.sku)
        variants.append(variant)
    assign_primary_for_color(variants)

    base = raw_variants[0]
    return FamilyRecord(
        supplier_code=supplier_code,
        family_key=family_key,
        name=name,
        content_hash=compute_family_hash(raw_variants),
        description=_first('description', raw_variants, locales),
        short_description=_first('short_description', raw_variants, locales),
        material=_first('material', raw_variants, locales),
        brand=_first_text('brand', raw_variants),
        category=_first_text('category', raw_variants),
        country_of_origin=_first_text('country_of_origin', raw_variants),
        delivery_time=_first_text('delivery_time', raw_variants),
        price_tiers=extraction.merge_price_tiers(v.price_tiers for v in variants),
        dimensions=extraction.extract_dimensions(base),
        variants=variants,
    )
