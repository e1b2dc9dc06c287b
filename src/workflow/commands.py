"""Inline keyboard commands.

Telegram hands back the ``callback_data`` string of the pressed button. It is
decoded once, here, into one of a closed set of command types; everything
downstream matches on the type instead of on strings.

Wire format: ``action:id`` or, for folder choices, ``choose_root:id:index``.
"""

from dataclasses import dataclass

APPROVE_PAYMENT = "approve_payment"
REJECT_PAYMENT = "reject_payment"
APPROVE_MEDIA = "approve_media"
REJECT_MEDIA = "reject_media"
CHOOSE_ROOT = "choose_root"


@dataclass(frozen=True)
class ApprovePayment:
    subscription_id: str


@dataclass(frozen=True)
class RejectPayment:
    subscription_id: str


@dataclass(frozen=True)
class ApproveMedia:
    request_id: str


@dataclass(frozen=True)
class RejectMedia:
    request_id: str


@dataclass(frozen=True)
class ChooseRoot:
    """Pick ``roots[index]`` of the folder list captured when the admin was prompted."""

    request_id: str
    index: int


@dataclass(frozen=True)
class UnknownCommand:
    raw: str


Command = ApprovePayment | RejectPayment | ApproveMedia | RejectMedia | ChooseRoot | UnknownCommand

_SIMPLE_COMMANDS: dict[str, type] = {
    APPROVE_PAYMENT: ApprovePayment,
    REJECT_PAYMENT: RejectPayment,
    APPROVE_MEDIA: ApproveMedia,
    REJECT_MEDIA: RejectMedia,
}


def parse_command(data: str | None) -> Command:
    """Decode callback data; anything malformed becomes ``UnknownCommand``."""
    raw = str(data or "")
    action, _, rest = raw.partition(":")

    if action == CHOOSE_ROOT:
        request_id, _, index = rest.rpartition(":")
        if not request_id or not index.isdigit():
            return UnknownCommand(raw)
        return ChooseRoot(request_id=request_id, index=int(index))

    command_type = _SIMPLE_COMMANDS.get(action)
    if command_type is None or not rest:
        return UnknownCommand(raw)
    return command_type(rest)


def encode_command(command: Command) -> str:
    match command:
        case ApprovePayment(subscription_id=sub_id):
            return f"{APPROVE_PAYMENT}:{sub_id}"
        case RejectPayment(subscription_id=sub_id):
            return f"{REJECT_PAYMENT}:{sub_id}"
        case ApproveMedia(request_id=request_id):
            return f"{APPROVE_MEDIA}:{request_id}"
        case RejectMedia(request_id=request_id):
            return f"{REJECT_MEDIA}:{request_id}"
        case ChooseRoot(request_id=request_id, index=index):
            return f"{CHOOSE_ROOT}:{request_id}:{index}"
        case UnknownCommand(raw=raw):
            return raw
