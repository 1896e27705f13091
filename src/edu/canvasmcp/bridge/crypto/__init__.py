"""
Cryptographic Primitives

This package holds the two primitives the credential store is built on.

Key Components:
- tokens.py: AES-256-GCM authenticated encryption for Canvas tokens at rest
- hashing.py: Argon2id hashing and verification for issued API keys

Encrypted values are stored as ``nonce:tag:ciphertext`` hex triples. A blob that does not
authenticate raises IntegrityError; it is never decoded into a different plaintext.
API keys are generated once, shown once and stored only as an Argon2id hash.
"""
