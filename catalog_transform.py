"""Transforms between POS catalog objects and local inventory records."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from exceptions import ValidationError

logger = logging.getLogger(__name__)

# Fields kept in sync between the two catalogs
SYNC_FIELDS = ('name', 'description', 'price', 'sku', 'category_id')

DEFAULT_VARIATION_NAME = 'Regular'


@dataclass
class RemoteItem:
    """A POS catalog item reduced to the synced fields plus identity metadata."""
    remote_id: str
    record: Dict[str, Any]
    variation_id: Optional[str] = None
    version: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.record.get('name') or self.remote_id


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Naive UTC datetime from a datetime or ISO-8601 string; None if absent."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value!r}")
            return None
    raise ValidationError(f"Unsupported timestamp type: {type(value).__name__}")


def _to_price(amount: Any) -> Optional[float]:
    if amount is None:
        return None
    try:
        return round(int(amount) / 100.0, 2)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid price amount: {amount!r}")


def remote_to_local(catalog_object: Dict[str, Any]) -> RemoteItem:
    """Map a POS ``ITEM`` catalog object to the local record shape."""
    remote_id = catalog_object.get('id')
    if not remote_id:
        raise ValidationError("Catalog object has no id")

    item_data = catalog_object.get('item_data')
    if not isinstance(item_data, dict):
        raise ValidationError(f"Catalog object {remote_id} has no item_data")
    if not item_data.get('name'):
        raise ValidationError(f"Catalog object {remote_id} has no name")

    variations = item_data.get('variations') or []
    variation = variations[0] if variations else {}
    variation_data = variation.get('item_variation_data') or {}
    price_money = variation_data.get('price_money') or {}

    record = {
        'name': item_data.get('name'),
        'description': item_data.get('description'),
        'price': _to_price(price_money.get('amount')),
        'sku': variation_data.get('sku'),
        'category_id': item_data.get('category_id'),
    }

    return RemoteItem(
        remote_id=remote_id,
        record=record,
        variation_id=variation.get('id'),
        version=catalog_object.get('version'),
        updated_at=parse_timestamp(catalog_object.get('updated_at'))
    )


def project_local(item: Any) -> Dict[str, Any]:
    """The synced fields of a local item (model instance or dict)."""
    if isinstance(item, dict):
        return {name: item.get(name) for name in SYNC_FIELDS}
    return {name: getattr(item, name, None) for name in SYNC_FIELDS}


def validate_local_record(record: Dict[str, Any]) -> None:
    if not record.get('name'):
        raise ValidationError("Item has no name")
    price = record.get('price')
    if price is not None:
        if not isinstance(price, (int, float)) or isinstance(price, bool):
            raise ValidationError(f"Item price is not numeric: {price!r}")
        if price < 0:
            raise ValidationError(f"Item price is negative: {price}")


def local_to_remote(record: Dict[str, Any], local_item_id: str, remote_id: Optional[str] = None,
                    variation_id: Optional[str] = None, version: Optional[int] = None,
                    currency: str = 'USD') -> Dict[str, Any]:
    """Build a POS ``ITEM`` catalog object from a local record.

    New objects get the temporary id ``#<local id>``.
    """
    validate_local_record(record)
    object_id = remote_id or f"#{local_item_id}"

    variation_data = {
        'item_id': object_id,
        'name': DEFAULT_VARIATION_NAME,
        'pricing_type': 'FIXED_PRICING',
    }
    if record.get('sku'):
        variation_data['sku'] = record['sku']
    if record.get('price') is not None:
        variation_data['price_money'] = {
            'amount': int(round(record['price'] * 100)),
            'currency': currency
        }

    item_data = {
        'name': record['name'],
        'variations': [{
            'type': 'ITEM_VARIATION',
            'id': variation_id or f"#{local_item_id}-variation",
            'item_variation_data': variation_data
        }]
    }
    if record.get('description') is not None:
        item_data['description'] = record['description']
    if record.get('category_id'):
        item_data['category_id'] = record['category_id']

    catalog_object = {
        'type': 'ITEM',
        'id': object_id,
        'item_data': item_data
    }
    if version is not None:
        catalog_object['version'] = version
    return catalog_object
