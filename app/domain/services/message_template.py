"""
Message Template - החלפת placeholders בטקסט הודעה

פונקציה טהורה: {name} מוחלף בערך מה-bindings, placeholder לא מוכר
נשאר כפי שהוא.
"""
import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render(template: str | None, bindings: Mapping[str, Any]) -> str:
    if not template:
        return template or ""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in bindings and bindings[name] is not None:
            return str(bindings[name])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


def sender_bindings(device_id: str, sender_jid: str) -> dict[str, str]:
    """bindings סטנדרטיים לתשובה לשולח"""
    return {
        "phone": sender_jid.split("@")[0],
        "jid": sender_jid,
        "device": device_id,
    }
