"""safe-upgrade: gated, rollback-safe dependency upgrades for package.json."""
