"""Domain services backing the admin and user actions."""
