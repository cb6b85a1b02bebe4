"""Builders and doubles shared by the test suite."""

import base64
import hashlib
import json
import zipfile
from pathlib import Path

JPEG_HEAD = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00"


class FakeUploader:
    """Records every upload and hands out sequential CIDs."""

    def __init__(self, cids=None):
        self.calls = []
        self.cids = list(cids or [])

    def upload(self, file, metadata, source=None, project_id=None, metadata_format=None, cancel=None):
        self.calls.append({
            "body": file.read(),
            "metadata": metadata,
            "project_id": project_id,
            "metadata_format": metadata_format,
        })
        if self.cids:
            return self.cids.pop(0)
        return f"bafy{len(self.calls)}"


def build_signed_bundle(path: Path, assets: dict, tamper: bool = False) -> Path:
    """Write a ProofMode-style zip with one proof set per asset."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("pubkey.asc", b"-----BEGIN PGP PUBLIC KEY BLOCK-----")
        for name, data in assets.items():
            digest = hashlib.sha256(data).hexdigest()
            proof = {
                "File Path": f"/storage/emulated/0/DCIM/{name}",
                "File Hash SHA256": digest,
                "File Modified": "2024-05-01T10:00:00Z",
                "File Created": "2024-05-01T09:59:00Z",
            }
            archive.writestr(name, data + b"tampered" if tamper else data)
            archive.writestr(f"{digest}.proof.json", json.dumps(proof))
            archive.writestr(f"{digest}.proof.json.asc", b"metasig-" + name.encode())
            archive.writestr(f"{digest}.asc", b"mediasig-" + name.encode())
            archive.writestr(f"{digest}.ots", b"ots-" + name.encode())
    return path


def build_wacz(path: Path, signed: bool = True, bad_hash: bool = False, signature=None) -> Path:
    """Write a minimal WACZ with a signed datapackage digest."""
    path.parent.mkdir(parents=True, exist_ok=True)
    datapackage = json.dumps({
        "profile": "data-package",
        "created": "2024-05-01T10:00:00Z",
        "modified": "2024-05-02T10:00:00Z",
        "resources": [],
    }).encode()
    digest_value = "sha256:" + hashlib.sha256(b"other" if bad_hash else datapackage).hexdigest()
    signed_data = {
        "hash": digest_value,
        "publicKey": base64.b64encode(b"public-key").decode(),
        "created": "2024-05-01T10:00:00Z",
        "software": "test",
    }
    if signed:
        signed_data["signature"] = base64.b64encode(b"signature").decode() if signature is None else signature
    digest = {"path": "datapackage.json", "hash": digest_value, "signedData": signed_data}

    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("datapackage.json", datapackage)
        archive.writestr("datapackage-digest.json", json.dumps(digest))
        archive.writestr("archive/data.warc.gz", b"\x1f\x8bwarc")
    return path


def mark_encrypted(path: Path, entry: str) -> Path:
    """Set the encryption flag on ``entry`` in the zip's central directory."""
    data = bytearray(path.read_bytes())
    offset = data.find(b"PK\x01\x02")
    while offset != -1:
        name_len = int.from_bytes(data[offset + 28:offset + 30], "little")
        if data[offset + 46:offset + 46 + name_len] == entry.encode():
            data[offset + 8] |= 0x01
        offset = data.find(b"PK\x01\x02", offset + 4)
    path.write_bytes(bytes(data))
    return path
