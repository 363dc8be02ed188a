"""
Built-in extraction workflows.

An instruction set names the extraction goal, the steps the model should
follow and the fields every returned record must carry. Projects and runs
reference a set by id.
"""

from ..models import InstructionField, InstructionSet

DEFAULT_INSTRUCTION_SET_ID = "ocr_all_text"


INSTRUCTION_SETS: list[InstructionSet] = [
    InstructionSet(
        id="ocr_all_text",
        name="Full-document OCR",
        summary=(
            "Extract searchable text from every page in reading order, "
            "preserving paragraphs where possible."
        ),
        steps=[
            "Process each page with high-accuracy OCR tuned for dense documents.",
            "Normalize whitespace while retaining headings and paragraph boundaries.",
            "Return the full plain-text output grouped by page number.",
        ],
        outputs=[
            "Page-level plain text suitable for downstream search or embeddings.",
            "Metadata indicating OCR confidence scores for each page.",
        ],
        fields=[
            InstructionField(name="page", description="The page index (1-based)."),
            InstructionField(name="text", description="Full OCR text extracted from the page."),
            InstructionField(
                name="confidence",
                description="Overall OCR confidence expressed as a decimal between 0 and 1.",
            ),
        ],
    ),
    InstructionSet(
        id="page_breakdown",
        name="Page structure breakdown",
        summary=(
            "Return a detailed inventory of textual blocks, tables, and visual "
            "regions for each page."
        ),
        steps=[
            "Segment each page into logical regions (heading, paragraph, table, figure).",
            "Capture the bounding boxes for every detected region.",
            "Summarize the important textual content and describe relevant visual elements.",
        ],
        outputs=[
            "A structured JSON array of all detected regions per page.",
            "Bounding box coordinates and human-readable descriptions for figures or charts.",
        ],
        fields=[
            InstructionField(name="page", description="The page index (1-based)."),
            InstructionField(
                name="regionType",
                description="The classification for the region (heading, paragraph, table, figure).",
            ),
            InstructionField(
                name="bounds",
                description="Bounding box coordinates in PDF points: [x, y, width, height].",
            ),
            InstructionField(
                name="content",
                description="Primary text or a description of the detected region.",
            ),
        ],
    ),
    InstructionSet(
        id="form_field_extraction",
        name="Filled form extraction",
        summary="Detect filled form fields and return their values as normalized JSON objects.",
        steps=[
            "Locate form inputs, checkboxes, and signature lines on each page.",
            "Determine the captured value or selection state for every field.",
            "Normalize the values using consistent keys for easy downstream ingestion.",
        ],
        outputs=[
            "Structured JSON keyed by form field names with detected values.",
            "A per-field confidence score and location metadata.",
        ],
        fields=[
            InstructionField(
                name="fieldName",
                description="Identifier inferred from nearby labels or PDF form metadata.",
            ),
            InstructionField(
                name="value",
                description="Detected input value, checkbox state, or signature presence.",
            ),
            InstructionField(name="page", description="The page number where the field appears."),
            InstructionField(name="confidence", description="Confidence score between 0 and 1."),
        ],
    ),
    InstructionSet(
        id="signature_detection",
        name="Signature detection",
        summary="Flag and describe signatures or initials placed on uploaded pages.",
        steps=[
            "Scan each page for handwritten regions and signature blocks.",
            "Differentiate between typed names and genuine handwriting strokes.",
            "Return cropped location details to support downstream verification workflows.",
        ],
        outputs=[
            "A list of detected signature regions with bounding boxes.",
            "Confidence scores and a label describing whether the mark is a signature or set of initials.",
        ],
        fields=[
            InstructionField(name="page", description="The page number containing the signature."),
            InstructionField(
                name="bounds",
                description="Bounding box coordinates in PDF points: [x, y, width, height].",
            ),
            InstructionField(
                name="type",
                description="Whether the detection appears to be a full signature or initials.",
            ),
            InstructionField(name="confidence", description="Confidence score between 0 and 1."),
        ],
    ),
]

_INSTRUCTION_SETS_BY_ID = {instruction_set.id: instruction_set for instruction_set in INSTRUCTION_SETS}


def is_instruction_set_id(value: object) -> bool:
    return isinstance(value, str) and value in _INSTRUCTION_SETS_BY_ID


def get_instruction_set(instruction_set_id: str | None) -> InstructionSet | None:
    """Look up a workflow by id; None for unknown or empty ids."""
    if not instruction_set_id:
        return None
    return _INSTRUCTION_SETS_BY_ID.get(instruction_set_id)


def resolve_instruction_set(*candidate_ids: str | None) -> InstructionSet:
    """Return the first known workflow among ``candidate_ids``, else the default."""
    for candidate in candidate_ids:
        instruction_set = get_instruction_set(candidate)
        if instruction_set is not None:
            return instruction_set
    return _INSTRUCTION_SETS_BY_ID[DEFAULT_INSTRUCTION_SET_ID]
