"""
Record Transforms - DayFile records to Mixpanel payloads

Pure functions with the signature ``(record, heavy_objects) -> dict | None``.
``heavy_objects`` is built once per load call by build_heavy_objects() and
holds id-keyed lookup tables plus display settings. Returning None skips the
record.

Events never carry the ENRICHED attachment. Profiles merge it in, then every
list/dict value is stripped so Mixpanel receives flat $set payloads.
"""

import hashlib
from datetime import datetime, timezone
from typing import Any, Optional

from utils.dates import day_timestamp
from utils.schemas import ENRICHED_KEY, DestinationEvent, GroupProfile, UserProfile

DEEP_LINK_KEY = "#  → SLACK"
MEMBER_EVENT = "daily user activity"
CHANNEL_EVENT = "daily channel activity"


def md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def strip_nested(mapping: dict[str, Any]) -> dict[str, Any]:
    """Drop list, tuple and dict values."""
    return {key: value for key, value in mapping.items() if not isinstance(value, (list, tuple, dict))}


def without_enriched(record: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in record.items() if key != ENRICHED_KEY}


def enriched_detail(record: dict[str, Any]) -> Optional[dict[str, Any]]:
    """The ENRICHED attachment, or None when absent or a cached lookup failure."""
    detail = record.get(ENRICHED_KEY)
    if not isinstance(detail, dict) or "error" in detail:
        return None
    return detail


def build_heavy_objects(
    kind: str,
    context: dict[str, Any],
    *,
    slack_prefix: str,
    group_key: str = "channel_id",
    manager_field_id: str = "",
) -> dict[str, Any]:
    """
    Build the shared transform context for one load call.

    Args:
        kind: 'members' or 'channels'
        context: {"members": [...], "channels": [...]} Slack entity listings
        slack_prefix: Deep link prefix (workspace archives URL)
        group_key: Mixpanel group key for channel profiles
        manager_field_id: Custom profile field holding a manager's user id

    Returns:
        Lookup tables keyed by entity id plus display settings
    """
    heavy = {
        "slack_prefix": slack_prefix,
        "members": {m["id"]: m for m in context.get("members") or [] if m.get("id")},
    }
    if kind == "members":
        heavy["manager_field_id"] = manager_field_id
    else:
        heavy["channels"] = {c["id"]: c for c in context.get("channels") or [] if c.get("id")}
        heavy["group_key"] = group_key
    return heavy


def _deep_link(heavy_objects: dict[str, Any], entity_id: str) -> str:
    return f"{heavy_objects.get('slack_prefix', '')}/{entity_id}"


# Members


def transform_member_event(record: dict[str, Any], heavy_objects: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Analytics record -> 'daily user activity' event."""
    email = record.get("email_address")
    if not email or not record.get("date"):
        return None

    user_id = record.get("user_id")
    properties = {
        **without_enriched(record),
        "time": day_timestamp(record["date"]),
        "distinct_id": email.lower(),
        "$insert_id": md5(f"{email}-{record['date']}-{user_id}"),
        "user_id": user_id,
        "email": email,
        "team_id": record.get("team_id"),
        DEEP_LINK_KEY: _deep_link(heavy_objects, user_id),
    }

    member = heavy_objects.get("members", {}).get(user_id)
    if member:
        properties["name"] = member.get("real_name")
        properties["display_name"] = (member.get("profile") or {}).get("display_name")
        properties["timezone"] = member.get("tz")

    return DestinationEvent(event=MEMBER_EVENT, properties=properties).model_dump()


def _custom_fields(profile: dict[str, Any], heavy_objects: dict[str, Any]) -> dict[str, Any]:
    """Flatten profile.fields ({id: {value, alt}}) and resolve the manager field."""
    fields = profile.get("fields") or {}
    if not isinstance(fields, dict):
        return {}

    manager_field_id = heavy_objects.get("manager_field_id")
    members = heavy_objects.get("members", {})
    flat = {}

    for field_id, field in fields.items():
        value = field.get("value") if isinstance(field, dict) else field
        if value in (None, ""):
            continue

        if field_id == manager_field_id:
            manager = members.get(value)
            flat["manager"] = manager.get("real_name") if manager else value
            flat["manager_id"] = value
        else:
            flat[field_id] = value

    return flat


def transform_member_profile(record: dict[str, Any], heavy_objects: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Analytics record (+ ENRICHED user/profile) -> user profile $set."""
    email = record.get("email_address")
    if not email:
        return None

    user_id = record.get("user_id")
    traits: dict[str, Any] = {}

    detail = enriched_detail(record)
    if detail:
        user = detail.get("user") or {}
        profile = detail.get("profile") or user.get("profile") or {}
        traits.update(strip_nested(user))
        traits.update(strip_nested(profile))
        traits.update(_custom_fields(profile, heavy_objects))

    member = heavy_objects.get("members", {}).get(user_id)
    if member and member.get("profile"):
        traits.update({
            "$name": member.get("real_name"),
            "$avatar": member["profile"].get("image_512"),
            "title": member["profile"].get("title"),
            "display_name": member["profile"].get("display_name"),
            "timezone": member.get("tz"),
        })

    traits.update({
        "$email": email,
        "slack_id": user_id,
        "slack_team_id": record.get("team_id"),
        DEEP_LINK_KEY: _deep_link(heavy_objects, user_id),
        "is_active": record.get("is_active"),
    })

    profile = UserProfile(distinct_id=email.lower(), traits=strip_nested(traits))
    return profile.model_dump(by_alias=True)


# Channels


def _channel_display(channel: dict[str, Any], heavy_objects: dict[str, Any], channel_id: str) -> dict[str, Any]:
    """Display fields shared by channel events and profiles."""
    display: dict[str, Any] = {DEEP_LINK_KEY: _deep_link(heavy_objects, channel_id)}
    if channel.get("name"):
        display["name"] = f"#{channel['name']}"

    purpose = (channel.get("purpose") or {}).get("value")
    if purpose:
        display["purpose"] = purpose
    topic = (channel.get("topic") or {}).get("value")
    if topic:
        display["topic"] = topic
    if channel.get("is_ext_shared") or channel.get("is_shared"):
        display["external"] = True
    if channel.get("is_private"):
        display["private"] = True
    if channel.get("num_members"):
        display["members"] = channel["num_members"]
    return display


def transform_channel_event(record: dict[str, Any], heavy_objects: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Analytics record -> 'daily channel activity' event."""
    channel_id = record.get("channel_id")
    if not channel_id or not record.get("date"):
        return None

    properties = {
        **without_enriched(record),
        "time": day_timestamp(record["date"]),
        "distinct_id": channel_id,
        "$insert_id": md5(f"{channel_id}-{record['date']}"),
        "channel_id": channel_id,
    }

    channel = heavy_objects.get("channels", {}).get(channel_id)
    if channel:
        properties.update(_channel_display(channel, heavy_objects, channel_id))

    return DestinationEvent(event=CHANNEL_EVENT, properties=properties).model_dump()


def transform_channel_profile(record: dict[str, Any], heavy_objects: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Analytics record (+ ENRICHED channel) -> group profile $set."""
    channel_id = record.get("channel_id")
    if not channel_id:
        return None

    channel = dict(heavy_objects.get("channels", {}).get(channel_id) or {})
    detail = enriched_detail(record)
    if detail:
        channel.update(detail.get("channel") or {})

    traits = without_enriched(record)
    if channel:
        display = _channel_display(channel, heavy_objects, channel_id)
        if "name" in display:
            display["$name"] = display.pop("name")
        traits.update(display)

        if channel.get("created"):
            traits["created"] = datetime.fromtimestamp(channel["created"], tz=timezone.utc).strftime("%Y-%m-%d")

        creator_id = channel.get("creator")
        if creator_id:
            creator = heavy_objects.get("members", {}).get(creator_id)
            traits["creator"] = creator.get("real_name") if creator else creator_id

    profile = GroupProfile(
        group_key=heavy_objects.get("group_key", "channel_id"),
        group_id=channel_id,
        traits=strip_nested(traits),
    )
    return profile.model_dump(by_alias=True)
