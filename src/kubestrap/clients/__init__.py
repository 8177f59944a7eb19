"""Thin wrappers around third-party SDKs."""
