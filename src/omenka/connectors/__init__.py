"""Front ends that drive a SyncEngine."""
