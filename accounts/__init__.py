"""User accounts and identity key protection."""
