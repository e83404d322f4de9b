from django.dispatch import Signal

# kwargs: store_id, entry, result
change_conflicted = Signal()

# kwargs: store_id, entry, error
change_rejected = Signal()

# kwargs: store_id, report
sync_completed = Signal()
