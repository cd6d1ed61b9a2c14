"""
Shopify product -> flat feed rows for the mobile-app catalog import.

One row per variant; a product without variants still yields one placeholder
row. Everything here is pure and deterministic: the same product always maps
to the same rows.
"""

import re
import unicodedata
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation

FEED_COLUMNS = (
    "product_id",
    "variant_id",
    "product_title",
    "product_summary",
    "product_brand",
    "product_tags",
    "product_collections",
    "product_url_slug",
    "variant_options",
    "variant_stock",
    "variant_sku",
    "variant_price",
    "variant_weight",
    "product_pict_url",
    "product_pict_position",
    "variant_pict_url",
)

SUMMARY_MAX_CHARS = 240
ELLIPSIS = "…"
MAX_TAGS = 5
MAX_COLLECTIONS = 5
MAX_OPTION_SLOTS = 3
UNLIMITED_STOCK = "Unlimited"
LIST_SEPARATOR = "/"

_MARKUP_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
_NON_KEY_CHARS = re.compile(r"[^a-z0-9_]")


# --- Text helpers ---

def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def slugify(title) -> str:
    """'Blue Mug' -> 'blue-mug'; runs of other characters become one '-'."""
    text = strip_diacritics(str(title or "").lower())
    return _NON_SLUG_CHARS.sub("-", text).strip("-")


def strip_html(html) -> str:
    text = _MARKUP_TAG.sub(" ", str(html or ""))
    return _WHITESPACE.sub(" ", text).strip()


def truncate(text, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    text = str(text or "")
    if len(text) <= max_chars:
        return text
    return text[:max_chars - 1].rstrip() + ELLIPSIS


def parse_tags(tags) -> list[str]:
    """Shopify REST sends tags as 'a, b, c'; GraphQL-shaped input as a list."""
    if not tags:
        return []
    if isinstance(tags, (list, tuple)):
        items = tags
    else:
        items = str(tags).split(",")
    return [str(t).strip() for t in items if str(t).strip()]


def format_tags(tags) -> str:
    return LIST_SEPARATOR.join(parse_tags(tags)[:MAX_TAGS])


def format_collections(collections) -> str:
    titles = []
    for c in collections or []:
        if isinstance(c, str):
            title = c.strip()
        elif isinstance(c, Mapping):
            title = str(c.get("title") or c.get("name") or "").strip()
        else:
            continue
        if title:
            titles.append(title)
    return LIST_SEPARATOR.join(titles[:MAX_COLLECTIONS])


def format_number(value) -> str:
    """Plain decimal text: 2.0 -> '2', 0.50 -> '0.5', None -> ''."""
    if value is None or value == "" or isinstance(value, bool):
        return ""
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        return ""
    if not number.is_finite():
        return ""
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")


# --- Variant options ---

def normalize_option_key(name) -> str:
    """'Talla Única' -> 'talla_unica'."""
    key = strip_diacritics(str(name or "").strip().lower())
    key = _WHITESPACE.sub("_", key)
    return _NON_KEY_CHARS.sub("", key)


def normalize_option_value(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_variant_options(product: Mapping, variant: Mapping) -> str:
    """'[[size:36]][[color:Red]]' from the product option names and variant values."""
    options = product.get("options") or []
    tokens = []
    for slot in range(MAX_OPTION_SLOTS):
        option = options[slot] if slot < len(options) else None
        name = option.get("name") if isinstance(option, Mapping) else option
        key = normalize_option_key(name)
        value = normalize_option_value(variant.get(f"option{slot + 1}"))
        if not key or value is None:
            continue
        tokens.append(f"[[{key}:{value}]]")
    return "".join(tokens)


# --- Stock, price, images ---

def variant_stock(variant: Mapping) -> str:
    # Shopify leaves inventory_management empty when stock is not tracked
    if not variant.get("inventory_management"):
        return UNLIMITED_STOCK
    quantity = variant.get("inventory_quantity")
    return format_number(quantity if quantity is not None else 0)


def variant_price(variant: Mapping) -> str:
    price = variant.get("price")
    if isinstance(price, str):
        return price.strip()
    return format_number(price)


def _product_images(product: Mapping) -> list:
    images = product.get("images")
    return images if isinstance(images, list) else []


def primary_image_url(product: Mapping) -> str:
    image = product.get("image")
    if isinstance(image, Mapping) and image.get("src"):
        return str(image["src"])
    images = _product_images(product)
    if images and isinstance(images[0], Mapping) and images[0].get("src"):
        return str(images[0]["src"])
    return ""


def _image_for_row(product: Mapping, index: int) -> tuple[str, str]:
    """(url, position) of the product image sharing the variant's index."""
    images = _product_images(product)
    image = images[index] if index < len(images) else None
    if not isinstance(image, Mapping):
        return "", ""
    return str(image.get("src") or ""), format_number(image.get("position") or index + 1)


def variant_image_url(product: Mapping, variant: Mapping) -> str:
    image_id = variant.get("image_id")
    if image_id:
        for image in _product_images(product):
            if isinstance(image, Mapping) and image.get("src") and str(image.get("id")) == str(image_id):
                return str(image["src"])
    return primary_image_url(product)


# --- Rows ---

def product_fields(product: Mapping, collections=None) -> dict:
    """Columns shared by every row of one product."""
    title = str(product.get("title") or "")
    handle = str(product.get("handle") or "").strip()
    if collections is None:
        collections = product.get("collections")
    return {
        "product_id": "",
        "variant_id": "",
        "product_title": title,
        "product_summary": truncate(strip_html(product.get("body_html"))),
        "product_brand": str(product.get("vendor") or ""),
        "product_tags": format_tags(product.get("tags")),
        "product_collections": format_collections(collections),
        "product_url_slug": handle or slugify(title),
    }


def map_product_rows(product: Mapping, collections=None) -> list[dict]:
    base = product_fields(product, collections)
    variants = product.get("variants")
    variants = [v for v in variants if isinstance(v, Mapping)] if isinstance(variants, list) else []

    if not variants:
        pict_url, pict_position = _image_for_row(product, 0)
        return [{
            **base,
            "variant_options": "",
            "variant_stock": "",
            "variant_sku": "",
            "variant_price": "",
            "variant_weight": "",
            "product_pict_url": pict_url,
            "product_pict_position": pict_position,
            "variant_pict_url": primary_image_url(product),
        }]

    rows = []
    for index, variant in enumerate(variants):
        pict_url, pict_position = _image_for_row(product, index)
        rows.append({
            **base,
            "variant_options": build_variant_options(product, variant),
            "variant_stock": variant_stock(variant),
            "variant_sku": str(variant.get("sku") or ""),
            "variant_price": variant_price(variant),
            "variant_weight": format_number(variant.get("weight")),
            "product_pict_url": pict_url,
            "product_pict_position": pict_position,
            "variant_pict_url": variant_image_url(product, variant),
        })
    return rows


def map_catalog(products, collections_by_product: Mapping | None = None) -> list[dict]:
    """Rows for a whole catalog, in upstream order.

    ``collections_by_product`` maps numeric product id to collection titles;
    when omitted, each product's own ``collections`` field is used.
    """
    rows = []
    for product in products:
        collections = None
        if collections_by_product is not None:
            try:
                collections = collections_by_product.get(int(product.get("id")), [])
            except (TypeError, ValueError):
                collections = []
        rows.extend(map_product_rows(product, collections))
    return rows
