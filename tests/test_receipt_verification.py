from __future__ import annotations

from daproof.crypto.deep_hash import deep_hash
from daproof.crypto.receipt import verify_receipt, verify_receipt_signature
from daproof.models.submission import TimestampReceipt
from daproof.testing.fixtures import sign_receipt


def _verify(r: dict) -> bool:
    return verify_receipt_signature(
        version=r["version"],
        receipt_id=r["id"],
        deadline_height=r["deadlineHeight"],
        timestamp=r["timestamp"],
        public=r["public"],
        signature=r["signature"],
    )


def test_valid_receipt_verifies() -> None:
    r = sign_receipt(receipt_id="proof-a", timestamp=1_700_000_000_500)
    assert _verify(r) is True


def test_tampered_timestamp_is_rejected() -> None:
    r = sign_receipt(receipt_id="proof-a", timestamp=1_700_000_000_500)
    r["timestamp"] = r["timestamp"] + 1
    assert _verify(r) is False


def test_tampered_id_is_rejected() -> None:
    r = sign_receipt(receipt_id="proof-a", timestamp=1_700_000_000_500)
    r["id"] = "proof-b"
    assert _verify(r) is False


def test_unsupported_version_rejected_even_with_valid_signature() -> None:
    # Signed over "2.0.0" so the signature itself is valid for those bytes.
    r = sign_receipt(receipt_id="proof-a", timestamp=1, version="2.0.0")
    assert _verify(r) is False


def test_garbage_signature_and_key_do_not_raise() -> None:
    r = sign_receipt(receipt_id="proof-a", timestamp=1)
    r["signature"] = "not-base64!!"
    assert _verify(r) is False
    r = sign_receipt(receipt_id="proof-a", timestamp=1)
    r["public"] = ""
    assert _verify(r) is False


def test_deep_hash_distinguishes_blob_and_list() -> None:
    assert deep_hash(b"abc") != deep_hash([b"abc"])
    assert deep_hash([b"a", b"b"]) != deep_hash([b"b", b"a"])
    assert len(deep_hash([b"a"])) == 48


# A receipt issued by a live storage node, kept byte-for-byte.
LIVE_RECEIPT = {
    "id": "DMGovTZKvZkWCbhgm1mRNi3MrjMl9lJtQ-0ReW4j7Wc",
    "timestamp": 1674650243344,
    "version": "1.0.0",
    "public": (
        "sq9JbppKLlAKtQwalfX5DagnGMlTirditXk7y4jgoeA7DEM0Z6cVPE5xMQ9kz_T9VppP6BFHtHyZCZOD"
        "ercEVWipzkr36tfQkR5EDGUQyLivdxUzbWgVkzw7D27PJEa4cd1Uy6r18rYLqERgbRvAZph5YJZmpSJk"
        "7r3MwnQquuktjvSpfCLFwSxP1w879-ss_JalM9ICzRi38henONio8gll6GV9-omrWwRMZer_15bspCK5"
        "txCwpY137nfKwKD5YBAuzxxcj424M7zlSHlsafBwaRwFbf8gHtW03iJER4lR4GxeY0WvnYaB3KDISHQp"
        "53a9nlbmiWO5WcHHYsR83OT2eJ0Pl3RWA-_imk_SNwGQTCjmA6tf_UVwL8HzYS2iyuu85b7iYK9ZQoh8"
        "nqbNC6qibICE4h9Fe3bN7AgitIe9XzCTOXDfMr4ahjC8kkqJ1z4zNAI6-Leei_Mgd8JtZh2vqFNZhXK0"
        "lSadFl_9Oh3AET7tUds2E7s-6zpRPd9oBZu6-kNuHDRJ6TQhZSwJ9ZO5HYsccb_G_1so72aXJymR9ggJ"
        "gWr4J3bawAYYnqmvmzGklYOlE_5HVnMxf-UxpT7ztdsHbc9QEH6W2bzwxbpjTczEZs3JCCB3c-NewNHs"
        "j9PYM3b5tTlTNP9kNAwPZHWpt11t79LuNkNGt9LfOek"
    ),
    "signature": (
        "bbrYlPfRjsAQiAlkv8ghwHp5_uf66jMZ6ovr2sCxJSYSY57wr64K4iJ0DF097TxvZFPaP-JvqAejXWYZ"
        "1QAi48BITZpv8dtiVpYG9-eE03dvx-FcxuGGAGN4K9KwGbeMauipOW4yLd_oRH4OZHIFcCJn_XU5oSGn"
        "V0GlopG3GkQy095Z9a7DaDZEEFc5-r6wVnsWrLuqDWmhRxfu2RcSripf5YSAELa03LX6-Hn3yGKi3aAA"
        "3xz90d2irLmj3Ib-qVPMWez0NwacsSecEQ_zR3sudsWn3T6KG5DxRGr8sCvx-5S9Mbg5YEPQx2GVgL7o"
        "PYxlQD3y1XNhupv3eB-9mfGq4AvvC2vD9xW-q7zgCl5gKZSnVffxrhmo4gU_pq0TP6ES-d-6Npk8szhj"
        "SFxgV_lpWbHfY0l2wr9WLQ87FcP5l4cDXNwBl62hR9w11vz86TzxIA-NWSYEjkAoge6-yfOK2n8ln0UO"
        "URMdumSh6kPPFfASkQdi3geBJuCoUIcuXScaExhiHrbUantrfuqd6o7hH-_GtYr1690V7zRS40Ie5vfr"
        "QZ-2WiwNFuNUdOnLqL-f4ftTXMvd3D8_QBSUuIpkZt4lWL6LxdEbw9niCzpN-yfCS4G22UFZn8MaGLKY"
        "2am5GdQ2DHceYFd2QhYC9-_7GZklobZwWP__oAn3_gc"
    ),
    "block": 1105854,
    "deadlineHeight": 1105854,
    "validatorSignatures": [],
}


def test_live_receipt_verifies() -> None:
    assert _verify(LIVE_RECEIPT) is True
    assert verify_receipt(TimestampReceipt.model_validate(LIVE_RECEIPT)) is True


def test_live_receipt_with_shifted_timestamp_is_rejected() -> None:
    r = dict(LIVE_RECEIPT, timestamp=LIVE_RECEIPT["timestamp"] + 1)
    assert _verify(r) is False
