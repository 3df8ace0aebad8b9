import hashlib

HASH_PREFIX = 'hash_'
HASH_LENGTH = 32


def hash_content(content: str) -> str:
    """
    Fingerprint raw content for deduplication.

    The text is hashed as-is: no whitespace or case normalization is applied, so only
    byte-for-byte identical content maps to the same key. This is a dedup key, not an
    integrity check. Lone surrogates (valid in a `str`, e.g. from `json.loads`) are encoded
    as-is rather than rejected.
    """
    digest = hashlib.sha256(content.encode('utf-8', 'surrogatepass')).hexdigest()
    return f'{HASH_PREFIX}{digest[:HASH_LENGTH]}'
