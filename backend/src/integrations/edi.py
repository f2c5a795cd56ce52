"""ANSI X12 rendering for EDI-based TMS partners.

Only the two documents the framework sends are supported: the 204 motor
carrier load tender (push_load) and the 214 shipment status message
(update_load_status). Segment terminator is "~", element separator "*".
"""

from datetime import datetime

from .credentials import EdiCredential
from .domain import Load, LoadStatus

SEGMENT_TERMINATOR = "~"
ELEMENT_SEPARATOR = "*"
X12_VERSION = "004010"

# AT7 shipment status codes
STATUS_CODES = {
    LoadStatus.AT_PICKUP: "X3",
    LoadStatus.LOADED: "AF",
    LoadStatus.IN_TRANSIT: "X6",
    LoadStatus.AT_DROPOFF: "X1",
    LoadStatus.DELIVERED: "D1",
    LoadStatus.COMPLETED: "D1",
    LoadStatus.DELAYED: "SD",
    LoadStatus.CANCELLED: "CA",
    LoadStatus.EXCEPTION: "A9",
}
DEFAULT_STATUS_CODE = "X6"


def _segment(*elements) -> str:
    return ELEMENT_SEPARATOR.join("" if e is None else str(e) for e in elements)


def _clean(value) -> str:
    """Strip characters that would break segment parsing."""
    return "" if value is None else str(value).replace("*", " ").replace("~", " ")


def _envelope(
    credential: EdiCredential,
    functional_id: str,
    transaction_set: str,
    body: list[str],
    control_number: int,
    now: datetime,
) -> str:
    isa_control = f"{control_number:09d}"
    st_control = f"{control_number % 10000:04d}"
    transaction = [_segment("ST", transaction_set, st_control), *body]
    transaction.append(_segment("SE", len(transaction) + 1, st_control))

    segments = [
        _segment(
            "ISA", "00", " " * 10, "00", " " * 10,
            credential.qualifier, credential.interchange_id.ljust(15),
            "ZZ", credential.trading_partner_id.ljust(15),
            now.strftime("%y%m%d"), now.strftime("%H%M"),
            "U", "00401", isa_control, "0", "P", ">",
        ),
        _segment(
            "GS", functional_id, credential.interchange_id, credential.trading_partner_id,
            now.strftime("%Y%m%d"), now.strftime("%H%M"), control_number, "X", X12_VERSION,
        ),
        *transaction,
        _segment("GE", 1, control_number),
        _segment("IEA", 1, isa_control),
    ]
    return SEGMENT_TERMINATOR.join(segments) + SEGMENT_TERMINATOR


def render_load_tender(
    load: Load,
    credential: EdiCredential,
    control_number: int,
    now: datetime,
) -> str:
    """Render an X12 204 load tender."""
    body = [
        _segment("B2", "", "", "", _clean(load.load_id), "", "PP"),
        _segment("B2A", "00"),
    ]
    if load.reference_number:
        body.append(_segment("L11", _clean(load.reference_number), "BM"))

    stops = [("LD", load.origin, load.pickup_at), ("UL", load.destination, load.delivery_at)]
    for index, (reason, address, when) in enumerate(stops, start=1):
        body.append(_segment("S5", index, reason))
        if when is not None:
            body.append(_segment("G62", "10" if reason == "LD" else "70", when.strftime("%Y%m%d")))
        if address:
            body.append(_segment("N1", "SH" if reason == "LD" else "CN", _clean(address.get("name"))))
            body.append(_segment(
                "N4",
                _clean(address.get("city")),
                _clean(address.get("state")),
                _clean(address.get("postal_code")),
            ))

    if load.weight_lbs is not None:
        body.append(_segment("L3", f"{load.weight_lbs:.0f}", "G"))

    return _envelope(credential, "SM", "204", body, control_number, now)


def render_status_message(
    load_id: str,
    status: LoadStatus,
    credential: EdiCredential,
    control_number: int,
    now: datetime,
) -> str:
    """Render an X12 214 shipment status message."""
    body = [
        _segment("B10", _clean(load_id), _clean(load_id), ""),
        _segment(
            "AT7",
            STATUS_CODES.get(status, DEFAULT_STATUS_CODE),
            "NS",
            "",
            "",
            now.strftime("%Y%m%d"),
            now.strftime("%H%M"),
        ),
    ]
    return _envelope(credential, "QM", "214", body, control_number, now)
