"""glucosync — continuous glucose sync service."""
