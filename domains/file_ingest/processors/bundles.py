"""
Verification of zip-containered evidence bundles.

Two bundle formats are recognised:

- signed bundles (ProofMode style): one or more captured assets, each with a
  ``<stem>.proof.json`` metadata file, detached signatures for the asset and
  the metadata, the signer's ``pubkey.asc`` and optional OpenTimestamps
  (``.ots``) and Google SafetyNet (``.gst``) proofs.
- archive bundles (WACZ): a web capture with ``datapackage.json`` and a signed
  ``datapackage-digest.json``.

The signature and timestamp material is carried as opaque bytes; checking it
cryptographically belongs to the backend. What is verified here is the bundle
structure and that every declared digest matches the bytes it describes.
"""

import base64
import binascii
import hashlib
import json
import posixpath
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from loguru import logger

from domains.file_ingest.errors import VerificationError

PROOF_SUFFIX = ".proof.json"
SIDECAR_SUFFIXES = (PROOF_SUFFIX, ".proof.csv", ".asc", ".ots", ".gst")
PUBKEY_NAME = "pubkey.asc"

DATAPACKAGE_NAME = "datapackage.json"
DATAPACKAGE_DIGEST_NAME = "datapackage-digest.json"

PathLike = Union[str, Path]

# Raised by zipfile on corrupt, encrypted or unsupported entries
ZIP_READ_ERRORS = (OSError, zipfile.BadZipFile, RuntimeError, NotImplementedError, zlib.error, EOFError)


@dataclass
class AssetMetadata:
    """Capture metadata embedded in a signed bundle for one asset."""
    file_path: str
    file_modified: str = ""
    file_created: str = ""
    sha256: str = ""


@dataclass
class SignedAsset:
    """One verified asset of a signed bundle."""
    metadata: AssetMetadata
    metadata_bytes: bytes
    metadata_signature: bytes
    asset_signature: bytes
    pubkey: bytes
    ots: bytes = b""
    gst: bytes = b""

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.metadata.file_path.replace("\\", "/"))


@dataclass
class ArchiveMetadata:
    """Verified archive-level metadata of a WACZ bundle."""
    metadata_bytes: bytes
    metadata_signature: bytes
    pubkey: bytes
    created: str = ""
    modified: str = ""


class BundleVerifier(Protocol):
    """Interface the classifier uses to inspect bundle files."""

    def is_signed_bundle(self, path: PathLike) -> bool: ...

    def is_archive_bundle(self, path: PathLike) -> bool: ...

    def verify_signed_bundle(self, path: PathLike) -> List[SignedAsset]: ...

    def verify_archive_bundle(self, path: PathLike) -> ArchiveMetadata: ...

    def extract_bundle_files(self, archive: zipfile.ZipFile) -> Dict[str, zipfile.ZipInfo]: ...


def _names(path: PathLike) -> Optional[List[str]]:
    try:
        with zipfile.ZipFile(path) as archive:
            return archive.namelist()
    except (OSError, zipfile.BadZipFile):
        return None


def _is_sidecar(name: str) -> bool:
    base = posixpath.basename(name)
    return base == PUBKEY_NAME or base.endswith(SIDECAR_SUFFIXES)


def _read_optional(archive: zipfile.ZipFile, name: str) -> bytes:
    try:
        return archive.read(name)
    except KeyError:
        return b""


def _read_required(archive: zipfile.ZipFile, name: str, what: str) -> bytes:
    try:
        return archive.read(name)
    except KeyError:
        raise VerificationError(f"{what} missing from bundle: {name}") from None


def _sha256_of_entry(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> str:
    digest = hashlib.sha256()
    with archive.open(info) as f:
        for block in iter(lambda: f.read(64 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


def _strip_algorithm(value: str) -> str:
    """``sha256:abcd`` -> ``abcd``"""
    return value.split(":", 1)[1] if ":" in value else value


def _b64(value, what: str) -> bytes:
    if not isinstance(value, str):
        raise VerificationError(f"{what} is not a string: {type(value).__name__}")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise VerificationError(f"{what} is not valid base64: {e}") from e


class ZipBundleVerifier:
    """Structural verifier for signed bundles and WACZ archives."""

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def is_signed_bundle(self, path: PathLike) -> bool:
        names = _names(path)
        if not names:
            return False
        return any(name.endswith(PROOF_SUFFIX) for name in names)

    def is_archive_bundle(self, path: PathLike) -> bool:
        names = _names(path)
        if not names:
            return False
        return DATAPACKAGE_NAME in names and DATAPACKAGE_DIGEST_NAME in names

    # ------------------------------------------------------------------
    # Signed bundles
    # ------------------------------------------------------------------

    def extract_bundle_files(self, archive: zipfile.ZipFile) -> Dict[str, zipfile.ZipInfo]:
        """
        Map asset file name to its zip entry, skipping proof sidecars.

        Raises:
            VerificationError: two entries share a file name, so the proof
                metadata cannot tell them apart
        """
        files: Dict[str, zipfile.ZipInfo] = {}
        for info in archive.infolist():
            if info.is_dir() or _is_sidecar(info.filename):
                continue
            name = posixpath.basename(info.filename)
            if name in files:
                raise VerificationError(
                    f"duplicate asset name {name} in bundle: {files[name].filename} and {info.filename}"
                )
            files[name] = info
        return files

    def verify_signed_bundle(self, path: PathLike) -> List[SignedAsset]:
        """
        Read and check every asset of a signed bundle.

        Raises:
            VerificationError: the zip is unreadable, a sidecar is missing or
                an asset's bytes do not match its declared SHA-256
        """
        try:
            with zipfile.ZipFile(path) as archive:
                return self._verify_signed_archive(archive)
        except ZIP_READ_ERRORS as e:
            raise VerificationError(f"cannot read signed bundle {path}: {e}") from e

    def _verify_signed_archive(self, archive: zipfile.ZipFile) -> List[SignedAsset]:
        names = archive.namelist()
        proofs = sorted(name for name in names if name.endswith(PROOF_SUFFIX))
        if not proofs:
            raise VerificationError("no proof metadata found in bundle")

        pubkey_name = next(
            (name for name in names if posixpath.basename(name) == PUBKEY_NAME), None
        )
        if pubkey_name is None:
            raise VerificationError(f"{PUBKEY_NAME} missing from bundle")
        pubkey = archive.read(pubkey_name)

        files = self.extract_bundle_files(archive)
        assets = []
        for proof_name in proofs:
            stem = proof_name[: -len(PROOF_SUFFIX)]
            metadata_bytes = archive.read(proof_name)
            metadata = self._parse_proof(proof_name, metadata_bytes)

            asset_name = posixpath.basename(metadata.file_path.replace("\\", "/"))
            info = files.get(asset_name)
            if info is None:
                raise VerificationError(f"asset {asset_name} referenced by {proof_name} not in bundle")

            if metadata.sha256:
                actual = _sha256_of_entry(archive, info)
                if actual != metadata.sha256.lower():
                    raise VerificationError(
                        f"hash mismatch for {asset_name}: expected {metadata.sha256}, got {actual}"
                    )

            assets.append(
                SignedAsset(
                    metadata=metadata,
                    metadata_bytes=metadata_bytes,
                    metadata_signature=_read_required(archive, proof_name + ".asc", "metadata signature"),
                    asset_signature=_read_required(archive, stem + ".asc", "asset signature"),
                    pubkey=pubkey,
                    ots=_read_optional(archive, stem + ".ots"),
                    gst=_read_optional(archive, stem + ".gst"),
                )
            )

        logger.debug(f"Verified signed bundle with {len(assets)} assets")
        return assets

    @staticmethod
    def _parse_proof(name: str, raw: bytes) -> AssetMetadata:
        try:
            proof = json.loads(raw)
        except ValueError as e:
            raise VerificationError(f"invalid proof metadata {name}: {e}") from e
        if not isinstance(proof, dict):
            raise VerificationError(f"invalid proof metadata {name}: not an object")

        file_path = proof.get("File Path")
        if not file_path:
            raise VerificationError(f"proof metadata {name} has no File Path")

        return AssetMetadata(
            file_path=str(file_path),
            file_modified=str(proof.get("File Modified", "")),
            file_created=str(proof.get("File Created", "")),
            sha256=str(proof.get("File Hash SHA256", "")),
        )

    # ------------------------------------------------------------------
    # Archive bundles
    # ------------------------------------------------------------------

    def verify_archive_bundle(self, path: PathLike) -> ArchiveMetadata:
        """
        Read and check the signed datapackage of a WACZ file.

        Raises:
            VerificationError: the zip is unreadable, the digest does not match
                ``datapackage.json`` or no signature is present
        """
        try:
            with zipfile.ZipFile(path) as archive:
                datapackage = _read_required(archive, DATAPACKAGE_NAME, "datapackage")
                digest_raw = _read_required(archive, DATAPACKAGE_DIGEST_NAME, "datapackage digest")
        except ZIP_READ_ERRORS as e:
            raise VerificationError(f"cannot read archive bundle {path}: {e}") from e

        try:
            package = json.loads(datapackage)
            digest = json.loads(digest_raw)
        except ValueError as e:
            raise VerificationError(f"invalid datapackage json: {e}") from e

        signed = digest.get("signedData") if isinstance(digest, dict) else None
        if not isinstance(signed, dict):
            raise VerificationError("datapackage digest is not signed")

        actual = hashlib.sha256(datapackage).hexdigest()
        for declared in (digest.get("hash"), signed.get("hash")):
            if declared is not None and _strip_algorithm(str(declared)).lower() != actual:
                raise VerificationError(f"datapackage hash mismatch: expected {declared}, got {actual}")
        if signed.get("hash") is None and digest.get("hash") is None:
            raise VerificationError("datapackage digest carries no hash")

        signature = signed.get("signature")
        if not signature:
            raise VerificationError("datapackage digest has no signature")

        if signed.get("publicKey"):
            pubkey = _b64(signed["publicKey"], "public key")
        elif signed.get("domainCert"):
            pubkey = str(signed["domainCert"]).encode("utf-8")
        else:
            raise VerificationError("datapackage digest has no public key or domain certificate")

        package = package if isinstance(package, dict) else {}
        return ArchiveMetadata(
            metadata_bytes=datapackage,
            metadata_signature=_b64(signature, "signature"),
            pubkey=pubkey,
            created=str(package.get("created", signed.get("created", ""))),
            modified=str(package.get("modified", package.get("created", ""))),
        )
