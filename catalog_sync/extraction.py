"""
Field extraction from raw supplier product records.

Supplier feeds have changed shape over the years: older documents carry flat
keys (`ANumber`, `Name`, `price_1`), newer ones nest everything under
`ProductDetails[<locale>]`, `NonLanguageDependedProductDetails` and
`ConfigurationFields`. Every canonical field is read through a FieldExtractor
holding an ordered list of named strategies; the first strategy yielding a
non-empty value wins. Flat legacy keys are tried first, then the nested
structures with English first.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DETAILS = 'ProductDetails'
NON_LANGUAGE = 'NonLanguageDependedProductDetails'
CONFIGURATION_FIELDS = 'ConfigurationFields'
DEFAULT_LOCALE = 'en'
DEFAULT_CURRENCY = 'EUR'
DEFAULT_PRICE_TYPE = 'selling'
LEGACY_PRICE_SLOTS = range(1, 9)
DIMENSION_FIELDS = ('length', 'width', 'height', 'diameter', 'depth', 'weight')

_LOOKUP_ERRORS = (KeyError, TypeError, AttributeError, IndexError)


def _is_present(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ''
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True


@dataclass(frozen=True)
class Strategy:
    name: str
    getter: Callable[[dict], Any]


class FieldExtractor:
    def __init__(self, field: str, strategies: list[Strategy]):
        self.field = field
        self.strategies = list(strategies)

    def resolve(self, raw: dict) -> tuple[Any, Optional[str]]:
        """Return `(value, strategy_name)` of the first strategy that matched."""
        for strategy in self.strategies:
            try:
                value = strategy.getter(raw)
            except _LOOKUP_ERRORS:
                continue
            if _is_present(value):
                return value, strategy.name
        return None, None

    def extract(self, raw: dict, default=None):
        value, _ = self.resolve(raw)
        return default if value is None else value

    def __repr__(self):
        names = ', '.join(s.name for s in self.strategies)
        return f"FieldExtractor({self.field!r}: {names})"


# ---------------------------------------------------------------------------
# Strategy builders
# ---------------------------------------------------------------------------

def flat_key(*keys: str) -> Strategy:
    def getter(raw):
        for key in keys:
            value = raw.get(key)
            if _is_present(value):
                return value
        return None
    return Strategy(f"flat:{'|'.join(keys)}", getter)


def path(*keys) -> Strategy:
    def getter(raw):
        node = raw
        for key in keys:
            node = node[key]
        return node
    return Strategy(f"path:{'.'.join(str(k) for k in keys)}", getter)


def _details_in_order(raw: dict) -> list[tuple[str, dict]]:
    details = raw[DETAILS]
    ordered = []
    if isinstance(details.get(DEFAULT_LOCALE), dict):
        ordered.append((DEFAULT_LOCALE, details[DEFAULT_LOCALE]))
    for locale, block in details.items():
        if locale != DEFAULT_LOCALE and isinstance(block, dict):
            ordered.append((locale, block))
    return ordered


def localized(key: str) -> Strategy:
    """Locale map `{locale: value}` of ProductDetails[*][key], English first."""
    def getter(raw):
        return {
            locale: block[key]
            for locale, block in _details_in_order(raw)
            if _is_present(block.get(key))
        }
    return Strategy(f"details:{key}", getter)


def localized_value(*keys: str) -> Strategy:
    """Single value from the first locale block that has it, English first."""
    def getter(raw):
        for _, block in _details_in_order(raw):
            node = block
            try:
                for key in keys:
                    node = node[key]
            except _LOOKUP_ERRORS:
                continue
            if _is_present(node):
                return node
        return None
    return Strategy(f"details-value:{'.'.join(keys)}", getter)


def configuration_field(name: str) -> Strategy:
    def getter(raw):
        fields = raw[DETAILS][DEFAULT_LOCALE][CONFIGURATION_FIELDS]
        for item in fields:
            if item.get('ConfigurationName') == name:
                return item.get('ConfigurationValue')
        return None
    return Strategy(f"configuration:{name}", getter)


def non_language(key: str) -> Strategy:
    return Strategy(f"non-language:{key}", lambda raw: raw[NON_LANGUAGE][key])


# ---------------------------------------------------------------------------
# Field registry
# ---------------------------------------------------------------------------

FIELDS = {
    'sku': FieldExtractor('sku', [
        flat_key('sku', 'SKU', 'Sku'),
        non_language('SKU'),
    ]),
    'family_key': FieldExtractor('family_key', [
        flat_key('a_number', 'ANumber', 'A_Number', 'aNumber', 'model', 'Model', 'ModelNumber'),
        configuration_field('Model'),
    ]),
    'name': FieldExtractor('name', [
        flat_key('name', 'Name', 'ProductName'),
        localized('Name'),
    ]),
    'description': FieldExtractor('description', [
        flat_key('description', 'Description'),
        localized('Description'),
    ]),
    'short_description': FieldExtractor('short_description', [
        flat_key('short_description', 'ShortDescription'),
        localized('ShortDescription'),
    ]),
    'material': FieldExtractor('material', [
        flat_key('material', 'Material'),
        localized('Material'),
        configuration_field('Material'),
    ]),
    'brand': FieldExtractor('brand', [
        flat_key('brand', 'Brand', 'BrandName'),
        non_language('Brand'),
    ]),
    'category': FieldExtractor('category', [
        flat_key('category', 'Category', 'CategoryCode'),
        non_language('Category'),
        non_language('CategoryCode'),
    ]),
    'color': FieldExtractor('color', [
        flat_key('color', 'Color', 'ColorName', 'SearchColor'),
        configuration_field('Color'),
        localized_value('Color'),
    ]),
    'color_code': FieldExtractor('color_code', [
        flat_key('color_code', 'ColorCode', 'colorCode'),
        non_language('ColorCode'),
        configuration_field('ColorCode'),
    ]),
    'hex_color': FieldExtractor('hex_color', [
        flat_key('hex_color', 'HexColor', 'hexColor', 'color_hex'),
        non_language('HexColor'),
        configuration_field('HexColor'),
    ]),
    'size': FieldExtractor('size', [
        flat_key('size', 'Size', 'SizeName'),
        configuration_field('Size'),
        non_language('Size'),
    ]),
    'country_of_origin': FieldExtractor('country_of_origin', [
        flat_key('country_of_origin', 'CountryOfOrigin'),
        non_language('CountryOfOrigin'),
    ]),
    'delivery_time': FieldExtractor('delivery_time', [
        flat_key('delivery_time', 'DeliveryTime'),
        non_language('DeliveryTime'),
    ]),
    'primary_image': FieldExtractor('primary_image', [
        flat_key('main_image', 'MainImage', 'image_url', 'ImageUrl'),
        localized_value('Image', 'Url'),
    ]),
    'gallery_images': FieldExtractor('gallery_images', [
        flat_key('gallery_images', 'GalleryImages', 'Images'),
        localized_value('MediaGalleryImages'),
    ]),
    'prices': FieldExtractor('prices', [
        flat_key('Prices'),
        non_language('Prices'),
    ]),
    'currency': FieldExtractor('currency', [
        flat_key('currency', 'Currency'),
        non_language('Currency'),
    ]),
}

for _dimension in DIMENSION_FIELDS:
    FIELDS[_dimension] = FieldExtractor(_dimension, [
        flat_key(_dimension, _dimension.capitalize(), _dimension.upper()),
        non_language(_dimension.capitalize()),
        configuration_field(_dimension.capitalize()),
    ])


def extract(field: str, raw: dict, default=None):
    return FIELDS[field].extract(raw, default)


def extract_text(field: str, raw: dict) -> str:
    value = FIELDS[field].extract(raw)
    if value is None:
        return ''
    if isinstance(value, dict):
        value = value.get(DEFAULT_LOCALE) or next(iter(value.values()), '')
    return str(value).strip()


def to_multilingual(value, locales) -> dict:
    """A plain string is replicated across every locale; a locale map is kept as is."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {locale: str(text) for locale, text in value.items() if _is_present(text)}
    text = str(value).strip()
    if not text:
        return {}
    return {locale: text for locale in locales}


def extract_multilingual(field: str, raw: dict, locales) -> dict:
    return to_multilingual(FIELDS[field].extract(raw), locales)


def _to_float(value) -> Optional[float]:
    if value is None or value == '':
        return None
    if isinstance(value, str):
        value = value.replace(',', '.').strip()
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-numeric value %r.", value)
        return None


def extract_dimensions(raw: dict) -> dict:
    dimensions = {}
    for name in DIMENSION_FIELDS:
        number = _to_float(FIELDS[name].extract(raw))
        if number is not None:
            dimensions[name] = number
    return dimensions


def _image_url(item) -> Optional[str]:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        return item.get('Url') or item.get('url')
    return None


def extract_primary_image(raw: dict) -> Optional[str]:
    return _image_url(FIELDS['primary_image'].extract(raw))


def extract_gallery_images(raw: dict) -> list[str]:
    value = FIELDS['gallery_images'].extract(raw, [])
    if not isinstance(value, list):
        value = [value]
    urls = []
    for item in value:
        url = _image_url(item)
        if url and url not in urls:
            urls.append(url)
    return urls


def extract_price_tiers(raw: dict) -> list[dict]:
    """
    Price tiers of one variant: nested `Prices` first, legacy
    `price_N`/`min_qty_N` slots otherwise.
    """
    currency = extract_text('currency', raw) or DEFAULT_CURRENCY
    tiers = []
    prices = FIELDS['prices'].extract(raw)
    if isinstance(prices, list):
        for item in prices:
            if not isinstance(item, dict):
                continue
            price = _to_float(item.get('Price'))
            if price is None:
                continue
            quantity = _to_float(item.get('Quantity'))
            tiers.append({
                'quantity': int(quantity) if quantity else 1,
                'price': price,
                'currency': item.get('Currency') or currency,
                'price_type': str(item.get('PriceType') or DEFAULT_PRICE_TYPE).lower(),
            })
    if tiers:
        return tiers

    for slot in LEGACY_PRICE_SLOTS:
        price = _to_float(raw.get(f'price_{slot}'))
        if price is None:
            continue
        quantity = _to_float(raw.get(f'min_qty_{slot}'))
        tiers.append({
            'quantity': int(quantity) if quantity else 1,
            'price': price,
            'currency': currency,
            'price_type': DEFAULT_PRICE_TYPE,
        })
    return tiers


def merge_price_tiers(tier_lists) -> list[dict]:
    """Merge tiers of several variants: quantity-ascending, first tier per (price type, quantity) wins."""
    merged = {}
    for tiers in tier_lists:
        for tier in tiers:
            merged.setdefault((tier.get('price_type', DEFAULT_PRICE_TYPE), tier['quantity']), tier)
    return [merged[key] for key in sorted(merged, key=lambda key: (key[1], key[0]))]
