"""
Persistence

The credential store is the only component that reads or writes the database. It owns
encryption of Canvas tokens at rest and hashing of issued API keys, so callers only ever
see plaintext at the moment it is needed.
"""
