"""
Model Artifacts - Loading (and writing) trained model files.

An artifact is a JSON document ``{"kind", "version", "parameters"}``. A
trainer may ship a detached Ed25519 signature next to it in
``<artifact>.sig`` (hex encoded) computed over the canonical JSON bytes
(sorted keys). When a verify key is configured, an artifact without a
valid signature is rejected.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from ..exceptions import ModelArtifactError
from .models import PredictiveModel, build_model

logger = logging.getLogger(__name__)

KeyLike = Union[str, bytes, VerifyKey]

REQUIRED_FIELDS = ('kind', 'version', 'parameters')


def canonical_bytes(artifact: Dict[str, Any]) -> bytes:
    """Canonical byte representation for signing."""
    return json.dumps(artifact, sort_keys=True).encode('utf-8')


def signature_path(path: Union[str, Path]) -> Path:
    path = Path(path)
    return path.with_name(path.name + '.sig')


def _as_verify_key(key: KeyLike) -> VerifyKey:
    if isinstance(key, VerifyKey):
        return key
    try:
        if isinstance(key, str):
            key = bytes.fromhex(key.strip())
        return VerifyKey(key)
    except (ValueError, TypeError, CryptoError) as e:
        raise ModelArtifactError(f"Invalid model verify key: {e}", reason="bad_key") from e


def load_model_artifact(path: Union[str, Path],
                        verify_key: Optional[KeyLike] = None) -> PredictiveModel:
    """
    Load a model artifact, verifying its signature when a key is given.

    Raises:
        ModelArtifactError: missing/unparsable file, bad signature or
            unknown model kind/parameters
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ModelArtifactError(f"Cannot read model artifact {path}: {e}",
                                 reason="unreadable") from e

    try:
        artifact = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ModelArtifactError(f"Model artifact {path} is not valid JSON: {e}",
                                 reason="malformed") from e

    if not isinstance(artifact, dict) or any(k not in artifact for k in REQUIRED_FIELDS):
        raise ModelArtifactError(
            f"Model artifact {path} must contain {', '.join(REQUIRED_FIELDS)}",
            reason="malformed",
        )
    if not isinstance(artifact['parameters'], dict):
        raise ModelArtifactError(f"Model artifact {path} parameters must be a mapping",
                                 reason="malformed")

    if verify_key is not None:
        key = _as_verify_key(verify_key)
        sig_file = signature_path(path)
        try:
            signature = bytes.fromhex(sig_file.read_text().strip())
        except (OSError, ValueError) as e:
            raise ModelArtifactError(f"Missing or unreadable signature {sig_file}: {e}",
                                     reason="unsigned") from e
        try:
            key.verify(canonical_bytes(artifact), signature)
        except (BadSignatureError, ValueError) as e:
            raise ModelArtifactError(f"Signature verification failed for {path}",
                                     reason="bad_signature") from e
        logger.info(f"Verified signature of model artifact {path.name}")

    try:
        model = build_model(artifact['kind'], version=str(artifact['version']),
                            **artifact['parameters'])
    except ValueError as e:
        raise ModelArtifactError(f"Invalid model artifact {path}: {e}",
                                 reason="invalid_model") from e

    logger.info(f"Loaded {model.kind} model {model.version} from {path}")
    return model


def save_model_artifact(model: PredictiveModel, path: Union[str, Path],
                        signing_key: Optional[SigningKey] = None) -> Path:
    """Write a model artifact and, when a signing key is given, its signature."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    artifact = model.to_artifact()
    path.write_text(json.dumps(artifact, indent=2, sort_keys=True))

    if signing_key is not None:
        signed = signing_key.sign(canonical_bytes(artifact))
        signature_path(path).write_text(bytes(signed.signature).hex())
        logger.info(f"Signed model artifact {path.name}")
    return path
