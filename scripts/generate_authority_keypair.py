#!/usr/bin/env python3
"""
Generate the update authority keypair used to sign metadata URI updates.

Writes a Solana CLI compatible keystore file (JSON byte array) and prints
the address to register as update authority.
"""

import json
import os
import sys
from pathlib import Path

from solders.keypair import Keypair

path = Path(sys.argv[1] if len(sys.argv) > 1 else "./keys/authority.json")
if path.exists():
    print(f"Refusing to overwrite existing keystore {path}")
    sys.exit(1)

print("Generating update authority keypair...")
print("=" * 60)

keypair = Keypair()
address = str(keypair.pubkey())

path.parent.mkdir(parents=True, exist_ok=True)
path.write_text(json.dumps(list(bytes(keypair))))
os.chmod(path, 0o600)

print(f"\nKeystore written to {path}\n")
print("Update authority address (public key):")
print(f"   {address}\n")

print("=" * 60)
print("\nAdd to your .env file:\n")
print(f"KEYSTORE_PATH={path}")

print("\n" + "=" * 60)
print("\nNext: transfer the collection's update authority to this address,")
print("then run: python scripts/init_db.py")
print("=" * 60)
