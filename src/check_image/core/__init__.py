"""Image access: shared types, credentials, daemon and registry clients."""
