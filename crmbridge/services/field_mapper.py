"""
Field mapper - turns a rule action's fieldMappings plus an enriched event into
provider-shaped contact and lead payloads.

Extraction order for standard source fields: contact details, then lead
detail, then top-level event fields. Numeric source names are custom field
ids looked up on the lead, then each contact, then the LPTracker flat list.
Empty values (None or "") never produce a key.

Routing by target provider:
- AmoCRM: phone/email become custom_fields_values entries on the contact,
  keyed by the numeric field id found in cached contacts_fields metadata.
  Custom fields use [{field_id, values: [{value}]}].
- LPTracker: phone/email stay flat; custom fields go in a flat "custom" dict.
"""
import logging
import re
from typing import Any, Optional, Union

from crmbridge.schemas.sync_rule import FieldMapping
from crmbridge.schemas.webhook_payloads import (
    EventContext,
    MappingResult,
    PROVIDER_AMOCRM,
    PROVIDER_LPTRACKER,
)
from crmbridge.utils.phone import DEFAULT_REGION, normalize_phone

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("name", "first_name", "last_name", "phone", "email")


# Bare-string mappings (sourceField -> target) written by older rule builders
LEGACY_CONTACT_TARGETS = ("name", "first_name", "last_name", "phone", "email")
LEGACY_LEAD_TARGETS = {"price": "price", "deal_name": "name", "note": "note", "task": "task"}

_PHONE_NAMES = ("PHONE", "Телефон", "phone")
_EMAIL_NAMES = ("EMAIL", "Email", "email")

# Comma as the decimal mark: last separator, one or two digits after it
_DECIMAL_COMMA = re.compile(r",\d{1,2}$")


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def _first(values: Any) -> Any:
    if isinstance(values, list):
        if not values:
            return None
        item = values[0]
        return item.get("value") if isinstance(item, dict) else item
    return values


def custom_field_value(entries: Optional[list], field: Any) -> Any:
    """
    Value of one custom field in either an AmoCRM custom_fields_values list
    ({field_id, field_code, field_name, values: [{value}]}) or an LPTracker
    flat list ({id, name, value}). Matches on id first, then code or name.
    """
    if not entries or field is None:
        return None
    key = str(field)
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        entry_id = entry.get("field_id", entry.get("id"))
        if entry_id is not None and str(entry_id) == key:
            return _entry_value(entry)
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if key in (entry.get("field_code"), entry.get("field_name"), entry.get("name")):
            return _entry_value(entry)
    return None


def _entry_value(entry: dict) -> Any:
    if "values" in entry:
        return _first(entry.get("values"))
    return _first(entry.get("value"))


def contact_channel(contact: Optional[dict], channel: str) -> Optional[str]:
    """Phone or email of a contact in either provider's shape."""
    if not contact:
        return None
    names = _PHONE_NAMES if channel == "phone" else _EMAIL_NAMES

    # AmoCRM multitext fields
    for entry in contact.get("custom_fields_values") or []:
        if not isinstance(entry, dict):
            continue
        if entry.get("field_code") in names or entry.get("field_name") in names:
            value = _first(entry.get("values"))
            if not is_empty(value):
                return value

    # LPTracker contact details
    for detail in contact.get("details") or []:
        if isinstance(detail, dict) and detail.get("type") == channel:
            value = detail.get("data")
            if not is_empty(value):
                return value

    value = contact.get(channel)
    if isinstance(value, list):
        value = _first(value)
    return None if is_empty(value) else value


def _pick(*candidates: Any) -> Any:
    for candidate in candidates:
        if not is_empty(candidate):
            return candidate
    return None


def extract_source_value(source_field: str, context: EventContext) -> Any:
    """Pull one source value out of the enriched event."""
    contact = context.contacts[0] if context.contacts else {}
    lead = context.lead or {}
    top = context.webhook_fields or {}

    if source_field == "name":
        return _pick(contact.get("name"), lead.get("name"), top.get("name"))
    if source_field in ("first_name", "last_name"):
        return _pick(contact.get(source_field), top.get(source_field))
    if source_field in ("phone", "email"):
        from_contacts = None
        for c in context.contacts:
            from_contacts = contact_channel(c, source_field)
            if from_contacts:
                break
        return _pick(from_contacts, lead.get(source_field), top.get(source_field))
    if source_field == "deal_name":
        return _pick(lead.get("name"), top.get("deal_name"))
    if source_field == "price":
        return _pick(lead.get("price"), top.get("price"))
    if source_field == "pipeline_id":
        return _pick(lead.get("pipeline_id"), lead.get("project_id"), top.get("pipeline_id"))
    if source_field == "status_id":
        return _pick(lead.get("status_id"), lead.get("funnel"), lead.get("stage_id"), top.get("status_id"))

    if source_field.isdigit():
        value = custom_field_value(lead.get("custom_fields_values"), source_field)
        if is_empty(value):
            for c in context.contacts:
                value = custom_field_value(c.get("custom_fields_values"), source_field)
                if not is_empty(value):
                    break
        if is_empty(value):
            value = custom_field_value(context.custom_fields, source_field)
        return None if is_empty(value) else value

    return _pick(top.get(source_field))


def parse_mapping(source_field: str, target: Union[FieldMapping, str, dict, None]) -> Optional[FieldMapping]:
    """
    Normalize one mapping value. Structured mappings pass through; legacy
    strings are inferred for a fixed set of known names and rejected otherwise.
    """
    if isinstance(target, FieldMapping):
        return target
    if isinstance(target, dict):
        try:
            return FieldMapping.model_validate(target)
        except ValueError:
            return None
    if not isinstance(target, str) or not target:
        return None
    if target in LEGACY_CONTACT_TARGETS:
        return FieldMapping(entity="contact", field=target, type="standard")
    if target in LEGACY_LEAD_TARGETS:
        return FieldMapping(entity="lead", field=LEGACY_LEAD_TARGETS[target], type="standard")
    return None


class FieldMapper:
    """
    One mapper per process; metadata comes through the CRM cache so the
    phone/email field id lookup costs one Redis read per action.
    """

    def __init__(self, storage, cache, system_log=None, phone_region: str = DEFAULT_REGION):
        self._storage = storage
        self._cache = cache
        self._system_log = system_log
        self.phone_region = phone_region

    async def map(
        self,
        tenant_id: str,
        field_mappings: Optional[dict],
        context: EventContext,
        target: str,
    ) -> MappingResult:
        result = MappingResult()
        for name in IDENTITY_FIELDS:
            value = extract_source_value(name, context)
            if not is_empty(value):
                if name == "phone":
                    value = normalize_phone(value, self.phone_region)
                result.identity[name] = value

        for source_field, raw_target in (field_mappings or {}).items():
            if not source_field or raw_target is None:
                continue

            mapping = parse_mapping(source_field, raw_target)
            if mapping is None:
                await self._warn(
                    tenant_id,
                    f"Skipping field mapping {source_field} -> {raw_target!r}: target cannot be resolved",
                    {"source_field": source_field, "target": str(raw_target), "target_crm": target},
                )
                continue

            value = extract_source_value(source_field, context)
            if is_empty(value):
                continue
            if mapping.entity == "contact" and mapping.field == "phone":
                value = normalize_phone(value, self.phone_region)

            if mapping.type == "custom":
                self._route_custom(result, mapping, value, target)
            else:
                await self._route_standard(tenant_id, result, mapping, value, target)

        logger.debug(
            "Mapped %d contact / %d lead fields for %s",
            len(result.contact_fields), len(result.lead_fields), target,
            extra={"tenant_id": tenant_id, "provider": target},
        )
        return result

    async def _route_standard(
        self,
        tenant_id: str,
        result: MappingResult,
        mapping: FieldMapping,
        value: Any,
        target: str,
    ) -> None:
        field = mapping.field

        if mapping.entity == "contact":
            if field in ("name", "first_name", "last_name"):
                result.contact_fields[field] = value
            elif field in ("phone", "email"):
                if target == PROVIDER_LPTRACKER:
                    result.contact_fields[field] = value
                    return
                field_id = await self._amocrm_channel_field_id(tenant_id, field)
                if field_id is None:
                    await self._warn(
                        tenant_id,
                        f"No AmoCRM contact field with code {field.upper()}; {field} not mapped",
                        {"field": field},
                    )
                    return
                result.contact_fields.setdefault("custom_fields_values", []).append({
                    "field_id": field_id,
                    "values": [{"value": value, "enum_code": "WORK"}],
                })
            else:
                await self._warn(tenant_id, f"Unknown standard contact field {field!r}", {"field": field})
            return

        if field in ("name", "deal_name"):
            result.lead_fields["name"] = value
        elif field == "price":
            result.lead_fields["price"] = _to_number(value)
        elif field == "note":
            result.notes.append(str(value))
        elif field == "task":
            result.tasks.append(str(value))
        else:
            await self._warn(tenant_id, f"Unknown standard lead field {field!r}", {"field": field})

    @staticmethod
    def _route_custom(result: MappingResult, mapping: FieldMapping, value: Any, target: str) -> None:
        bucket = result.contact_fields if mapping.entity == "contact" else result.lead_fields
        if target == PROVIDER_AMOCRM:
            try:
                field_id: Union[int, str] = int(mapping.field)
            except (TypeError, ValueError):
                field_id = mapping.field
            bucket.setdefault("custom_fields_values", []).append({
                "field_id": field_id,
                "values": [{"value": value}],
            })
        else:
            bucket.setdefault("custom", {})[mapping.field] = value

    async def _amocrm_channel_field_id(self, tenant_id: str, channel: str) -> Optional[int]:
        metadata = await self._cache.get_metadata(
            tenant_id, PROVIDER_AMOCRM, "contacts_fields",
            lambda: self._storage.get_metadata(tenant_id, PROVIDER_AMOCRM, "contacts_fields"),
        )
        code = channel.upper()
        for field in metadata_fields(metadata):
            if field.get("code") == code and field.get("type", "multitext") == "multitext":
                return field.get("id")
        return None

    async def _warn(self, tenant_id: str, message: str, data: dict) -> None:
        if self._system_log is not None:
            await self._system_log.warning(message, tenant_id=tenant_id, data=data, source="field-mapper")
        else:
            logger.warning(message, extra={"tenant_id": tenant_id})


def metadata_fields(metadata: Any) -> list[dict]:
    """Custom field definitions from a raw AmoCRM /custom_fields response or a plain list."""
    if isinstance(metadata, list):
        return [f for f in metadata if isinstance(f, dict)]
    if isinstance(metadata, dict):
        fields = (metadata.get("_embedded") or {}).get("custom_fields")
        if fields is None:
            fields = metadata.get("result") or []
        return [f for f in fields if isinstance(f, dict)]
    return []


def _to_number(value: Any) -> Any:
    """
    Parse a price. "1 500", "1,500" and "1.500,50" are thousands-separated;
    "99,9" uses a decimal comma. Unparseable values pass through unchanged.
    """
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).replace(" ", "").replace("\u00a0", "")
        comma = text.rfind(",")
        if comma != -1 and text.rfind(".") < comma and _DECIMAL_COMMA.search(text):
            text = text[:comma].replace(",", "").replace(".", "") + "." + text[comma + 1:]
        else:
            text = text.replace(",", "")
        number = float(text)
        return int(number) if number.is_integer() else number
    except (TypeError, ValueError):
        return value
