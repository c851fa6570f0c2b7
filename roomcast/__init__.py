"""RoomCast calendar sync and display push service."""
