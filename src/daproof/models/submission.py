# src/daproof/models/submission.py
from __future__ import annotations

"""Submission payload schemas.

A submission is the JSON document a trusted submitter uploads to the storage
network. The `type` field selects one of three closed variants; each variant
carries its own event shape and its own signed typed-data shape.

Models are frozen: a parsed submission is never mutated. Fields the index adds
(`id`, `submitter`, `proof_upload`) are attached at parse time.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from daproof.crypto.submitter_sig import submission_signing_message
from daproof.errors import InvariantError

Json = Dict[str, Any]

EMPTY_BYTE = "0x"


class SubmissionType(str, Enum):
    POST = "POST_CREATED"
    COMMENT = "COMMENT_CREATED"
    MIRROR = "MIRROR_CREATED"


class PointerType(str, Enum):
    ON_DA = "ON_DA"
    ON_EVM_CHAIN = "ON_EVM_CHAIN"


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in code; unknown keys ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore")


def hex_to_int(v: Any) -> int:
    """Parse a hex quantity ("0x1a") or a decimal int/str."""
    if isinstance(v, bool):
        raise ValueError("bool is not a quantity")
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    if s.startswith("0x"):
        return int(s, 16) if len(s) > 2 else 0
    return int(s)


# ---------------------------------------------------------------------------
# Timestamp proofs
# ---------------------------------------------------------------------------


class ValidatorSignature(_WireModel):
    address: str
    signature: str


class TimestampReceipt(_WireModel):
    id: str
    public: str
    signature: str
    version: str
    block: int = 0
    deadline_height: int
    validator_signatures: List[ValidatorSignature] = Field(default_factory=list)
    timestamp: int


class TimestampProofs(_WireModel):
    type: str = "BUNDLR"
    hash_prefix: str = "1"
    response: TimestampReceipt

    @property
    def receipt(self) -> TimestampReceipt:
        return self.response


class ProofUpload(_WireModel):
    """What the separately-uploaded timestamp proof declares, and who uploaded it."""

    type: str
    data_availability_id: str
    uploader: str = ""


# ---------------------------------------------------------------------------
# Chain proofs
# ---------------------------------------------------------------------------


class Pointer(_WireModel):
    location: str
    type: PointerType = PointerType.ON_DA

    @property
    def target_id(self) -> str:
        return self.location.replace("ar://", "", 1).strip()


class TypedDataDomain(_WireModel):
    name: str = ""
    version: str = ""
    chain_id: int = 0
    verifying_contract: str = ""


class _TypedDataValueBase(_WireModel):
    nonce: int
    deadline: int


class PostTypedDataValue(_TypedDataValueBase):
    profile_id: str
    content_uri: str = Field(alias="contentURI")
    collect_module: str
    collect_module_init_data: str
    reference_module: str
    reference_module_init_data: str


class CommentTypedDataValue(_TypedDataValueBase):
    profile_id: str
    content_uri: str = Field(alias="contentURI")
    profile_id_pointed: str
    pub_id_pointed: str
    reference_module_data: str
    collect_module: str
    collect_module_init_data: str
    reference_module: str
    reference_module_init_data: str


class MirrorTypedDataValue(_TypedDataValueBase):
    profile_id: str
    profile_id_pointed: str
    pub_id_pointed: str
    reference_module_data: str
    reference_module: str
    reference_module_init_data: str


class _TypedDataBase(_WireModel):
    domain: TypedDataDomain = Field(default_factory=TypedDataDomain)
    types: Dict[str, List[Dict[str, str]]] = Field(default_factory=dict)


class PostTypedData(_TypedDataBase):
    value: PostTypedDataValue


class CommentTypedData(_TypedDataBase):
    value: CommentTypedDataValue


class MirrorTypedData(_TypedDataBase):
    value: MirrorTypedDataValue


class _PublicationProofBase(_WireModel):
    signature: str
    signed_by_delegate: bool = False
    signature_deadline: int = 0
    block_hash: str = ""
    block_number: int
    block_timestamp: int


class PostPublicationProof(_PublicationProofBase):
    typed_data: PostTypedData


class CommentPublicationProof(_PublicationProofBase):
    typed_data: CommentTypedData


class MirrorPublicationProof(_PublicationProofBase):
    typed_data: MirrorTypedData


class PostChainProofs(_WireModel):
    this_publication: PostPublicationProof
    pointer: Optional[Pointer] = None


class CommentChainProofs(_WireModel):
    this_publication: CommentPublicationProof
    pointer: Optional[Pointer] = None


class MirrorChainProofs(_WireModel):
    this_publication: MirrorPublicationProof
    pointer: Optional[Pointer] = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class PostCreatedEvent(_WireModel):
    profile_id: str
    pub_id: str
    content_uri: str = Field(alias="contentURI")
    collect_module: str
    collect_module_return_data: str
    reference_module: str
    reference_module_return_data: str
    timestamp: int


class CommentCreatedEvent(_WireModel):
    profile_id: str
    pub_id: str
    content_uri: str = Field(alias="contentURI")
    profile_id_pointed: str
    pub_id_pointed: str
    reference_module_data: str
    collect_module: str
    collect_module_return_data: str
    reference_module: str
    reference_module_return_data: str
    timestamp: int


class MirrorCreatedEvent(_WireModel):
    profile_id: str
    pub_id: str
    profile_id_pointed: str
    pub_id_pointed: str
    reference_module_data: str
    reference_module: str
    reference_module_return_data: str
    timestamp: int


# ---------------------------------------------------------------------------
# Submissions (closed tagged variant)
# ---------------------------------------------------------------------------


class _SubmissionBase(_WireModel):
    id: str
    data_availability_id: str
    signature: str = ""
    # text the submitter signed; derived from the raw document at parse time
    signed_message: str = Field(default="", exclude=True, repr=False)
    publication_id: str = ""
    timestamp_proofs: TimestampProofs

    # attached by the index client
    submitter: str = ""
    proof_upload: Optional[ProofUpload] = None

    @property
    def block_number(self) -> int:
        return int(self.chain_proofs.this_publication.block_number)  # type: ignore[attr-defined]

    @property
    def block_timestamp(self) -> int:
        return int(self.chain_proofs.this_publication.block_timestamp)  # type: ignore[attr-defined]

    @property
    def pointer(self) -> Optional[Pointer]:
        return self.chain_proofs.pointer  # type: ignore[attr-defined]


class PostSubmission(_SubmissionBase):
    type: Literal["POST_CREATED"]
    chain_proofs: PostChainProofs
    event: PostCreatedEvent


class CommentSubmission(_SubmissionBase):
    type: Literal["COMMENT_CREATED"]
    chain_proofs: CommentChainProofs
    event: CommentCreatedEvent


class MirrorSubmission(_SubmissionBase):
    type: Literal["MIRROR_CREATED"]
    chain_proofs: MirrorChainProofs
    event: MirrorCreatedEvent


Submission = Annotated[
    Union[PostSubmission, CommentSubmission, MirrorSubmission],
    Field(discriminator="type"),
]

_SUBMISSION_ADAPTER: TypeAdapter[Submission] = TypeAdapter(Submission)


def parse_submission(
    payload: Json,
    *,
    submission_id: Optional[str] = None,
    submitter: Optional[str] = None,
    proof_upload: Optional[Json] = None,
) -> Union[PostSubmission, CommentSubmission, MirrorSubmission]:
    """Validate a raw submission document into its variant model.

    Raises InvariantError for malformed payloads or unknown types.
    """
    if not isinstance(payload, dict):
        raise InvariantError("INVALID_PAYLOAD", "payload_not_object")

    doc: Json = dict(payload)
    try:
        doc["signedMessage"] = submission_signing_message(payload)
    except (TypeError, ValueError) as e:
        raise InvariantError("INVALID_PAYLOAD", "payload_not_serializable", str(e)) from e
    if submission_id is not None:
        doc["id"] = str(submission_id)
    if submitter is not None:
        doc["submitter"] = str(submitter).lower()
    if proof_upload is not None:
        doc["proofUpload"] = proof_upload

    try:
        return _SUBMISSION_ADAPTER.validate_python(doc)
    except ValidationError as e:
        raise InvariantError(
            "INVALID_PAYLOAD",
            "schema_validation_failed",
            {"id": doc.get("id"), "type": doc.get("type"), "errors": e.errors(include_url=False)},
        ) from e
