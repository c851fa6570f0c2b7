"""HTTP routes: cron trigger, display push/poll, admin health."""
