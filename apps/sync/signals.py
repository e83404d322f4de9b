from django.dispatch import Signal

# Sent after each push entry is committed. kwargs: scope, entry, result.
change_applied = Signal()

# Sent after a conflict reaches a terminal state. kwargs: scope, conflict, result.
conflict_closed = Signal()
