"""hrgate authority service: enrollment, sessions, readings and signal issuance."""
