from __future__ import annotations


_ORDINALS_ID = (
    "Pertama",
    "Kedua",
    "Ketiga",
    "Keempat",
    "Kelima",
    "Keenam",
    "Ketujuh",
    "Kedelapan",
    "Kesembilan",
    "Kesepuluh",
)


def ordinal(value: int) -> str:
    n = max(value, 1)
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def ordinal_id(value: int) -> str:
    n = max(value, 1)
    if n <= len(_ORDINALS_ID):
        return _ORDINALS_ID[n - 1]
    return f"Ke-{n}"


def sequence_label(sequence: int | None, previous_rejections: int | None, locale: str = "en") -> str:
    """Human-readable position of a quotation in its revision chain.

    ``sequence_label(1, 0) == "1st quotation"`` and
    ``sequence_label(2, 1) == "2nd quotation (1st revision)"``. With
    ``locale="id"`` the customer-facing form is used, e.g.
    ``"Penawaran Kedua (Revisi Pertama)"``. Derived only from the two integers
    so every caller renders the same text.
    """
    revised = bool(previous_rejections and previous_rejections > 0)
    if locale == "id":
        label = f"Penawaran {ordinal_id(sequence or 1)}"
        if revised:
            label = f"{label} (Revisi {ordinal_id(previous_rejections)})"
        return label

    label = f"{ordinal(sequence or 1)} quotation"
    if revised:
        label = f"{label} ({ordinal(previous_rejections)} revision)"
    return label


def short_label(sequence: int | None) -> str:
    return f"#{max(sequence or 1, 1)}"
