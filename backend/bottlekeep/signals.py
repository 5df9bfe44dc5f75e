# Overview: Advisory change notifications for live views.

"""
Signals are sent after a mutation commits, with the serialized row as the
`payload` keyword. Nothing in the service layer subscribes to them; they are
a hook for UIs and tests that want to observe changes as they happen.

    from bottlekeep.signals import deposit_changed

    @deposit_changed.connect
    def on_deposit(sender, payload, **extra):
        ...

A receiver that raises is logged and skipped; the committed change and the
other receivers are unaffected.
"""

from flask import current_app
from blinker import Namespace

_signals = Namespace()

deposit_changed = _signals.signal("deposit-changed")
withdrawal_changed = _signals.signal("withdrawal-changed")
transfer_changed = _signals.signal("transfer-changed")


def emit(signal, row, *, action: str) -> None:
    """Send `signal` with the row's to_dict() and the action name to each receiver."""
    sender = row.__class__.__name__
    payload = row.to_dict()
    for receiver in signal.receivers_for(sender):
        try:
            receiver(sender, payload=payload, action=action)
        except Exception:
            current_app.logger.exception(
                "Signal receiver %r failed: signal=%s action=%s", receiver, signal.name, action
            )
