"""OCI image layouts and layout archives."""
