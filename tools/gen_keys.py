import json
import os

from hrgate.signing import generate_keypair

key_path = os.getenv("SIGNING_KEY_PATH", "secrets/hrgate_signing_key.json")
os.makedirs(os.path.dirname(key_path) or ".", exist_ok=True)

private_key, public_key = generate_keypair()

with open(key_path, "w", encoding="utf-8") as f:
    json.dump({"private_key": private_key, "public_key": public_key}, f, indent=2)
os.chmod(key_path, 0o600)

print(f"Generated authority signing key: {key_path}")
print(f"Public key: {public_key}")
