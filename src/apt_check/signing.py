from __future__ import annotations

import logging
import tempfile

import gnupg

from apt_check.models import SignatureError

logger = logging.getLogger(__name__)

_ARMOR_HEADER = b"-----BEGIN PGP PUBLIC KEY BLOCK-----"


def verify_inrelease(content: bytes, key: bytes, *, armored: bool = True) -> str:
    """
    用给定公钥校验 InRelease 的内联签名，成功时返回签名者指纹。

    密钥导入临时 keyring，不会触碰用户自己的 ~/.gnupg。
    armored=True 时要求密钥是 ASCII armor 格式；否则按二进制密钥导入。
    失败（gpg 不可用、密钥无法导入、签名无效）时抛出 SignatureError。
    """
    if armored and not key.lstrip().startswith(_ARMOR_HEADER):
        raise SignatureError("signing key is not an ASCII-armored OpenPGP public key")
    if not armored and key.lstrip().startswith(_ARMOR_HEADER):
        logger.warning("签名密钥是 ASCII armor 格式，但指定了二进制密钥。")

    with tempfile.TemporaryDirectory(prefix="apt-check-gpg-", ignore_cleanup_errors=True) as home:
        try:
            gpg = gnupg.GPG(gnupghome=home)
        except (OSError, ValueError) as exc:
            raise SignatureError(f"gpg is not available: {exc}") from exc

        imported = gpg.import_keys(key)
        if not imported.count:
            raise SignatureError(f"cannot import signing key: {imported.stderr}")

        verified = gpg.verify(content)

    if not verified.valid:
        reason = verified.status or "no valid signature"
        if verified.status == "no public key":
            reason = f"signed by unknown key {verified.key_id}"
        raise SignatureError(f"InRelease signature verification failed: {reason}")

    logger.info("InRelease 签名有效（%s）。", verified.fingerprint)
    return str(verified.fingerprint)
