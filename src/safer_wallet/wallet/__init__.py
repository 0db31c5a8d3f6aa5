"""Chain access for Safer.

Network definitions, the Safe contract client, owner signers and encrypted
keystores. Signing keys never leave this package: services receive a
``Signer`` and only ever ask it for signatures.
"""
