from datetime import datetime, timezone


def parse_iso_timestamp(value: str) -> datetime:
    text = value.strip().replace("Z", "+00:00")
    # Docker reports nanosecond precision; fromisoformat accepts at most micro.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if char.isdigit():
                digits += char
                continue
            rest = tail[index:]
            break
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = ["parse_iso_timestamp"]
