"""CLI tools for treesync."""
