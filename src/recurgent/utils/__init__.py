"""Small filesystem and hashing helpers shared across recurgent."""
