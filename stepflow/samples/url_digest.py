from stepflow.connectors.registry import ActionSpec
from stepflow.engine.models import (
    DataEdge, INPUT_SOURCE, OUTPUT_TARGET, STATIC_SOURCE, StepNode, StepType, WorkflowDefinition,
)

URL_DIGEST_ID = "url-digest"

# Catalog entries for the two remote actions the sample uses
SAMPLE_ACTIONS = [
    ActionSpec(
        toolkit_slug="firecrawl",
        action_id="FIRECRAWL_SCRAPE",
        name="Scrape URL",
        description="Fetch a page and return its content as markdown",
        input_schema={
            "type": "object",
            "properties": {"url": {"type": "string"}, "formats": {"type": "array"}},
            "required": ["url"],
        },
        output_schema={
            "type": "object",
            "properties": {
                "markdown": {"type": "string"},
                "metadata": {"type": "object"},
            },
        },
    ),
    ActionSpec(
        toolkit_slug="gmail",
        action_id="GMAIL_SEND_EMAIL",
        name="Send email",
        description="Send an email from the connected Gmail account",
        input_schema={
            "type": "object",
            "properties": {
                "recipient_email": {"type": "string"},
                "subject": {"type": "string"},
                "body": {"type": "string"},
            },
            "required": ["recipient_email", "body"],
        },
        output_schema={
            "type": "object",
            "properties": {"id": {"type": "string"}, "threadId": {"type": "string"}},
        },
    ),
]

# Keeps the first paragraphs of the page so the email stays short
DIGEST_CODE = '''
def run(input):
    text = (input.get("markdown") or "").strip()
    paragraphs = [p.strip() for p in text.split("\\n\\n") if p.strip()]
    limit = int(input.get("max_paragraphs") or 3)
    return {
        "summary": "\\n\\n".join(paragraphs[:limit]),
        "paragraph_count": len(paragraphs),
    }
'''


def create_url_digest_workflow() -> WorkflowDefinition:
    """Create the URL digest workflow: scrape a page, trim it, email the digest"""

    nodes = [
        StepNode(
            id="fetch_url",
            type=StepType.REMOTE_TOOL,
            name="Fetch URL",
            toolkit_slug="firecrawl",
            action_id="FIRECRAWL_SCRAPE",
        ),
        StepNode(
            id="digest",
            type=StepType.CUSTOM_CODE,
            name="Build digest",
            code=DIGEST_CODE,
            input_schema={
                "type": "object",
                "properties": {
                    "markdown": {"type": "string"},
                    "max_paragraphs": {"type": "integer", "default": 3},
                },
                "required": ["markdown"],
            },
            output_schema={
                "type": "object",
                "properties": {
                    "summary": {"type": "string"},
                    "paragraph_count": {"type": "integer"},
                },
            },
        ),
        StepNode(
            id="send_email",
            type=StepType.REMOTE_TOOL,
            name="Send digest",
            toolkit_slug="gmail",
            action_id="GMAIL_SEND_EMAIL",
        ),
    ]

    edges = [
        DataEdge(source_step_id=INPUT_SOURCE, source_field_path="url",
                 target_step_id="fetch_url", target_field_path="url"),
        DataEdge(source_step_id=STATIC_SOURCE, value=["markdown"],
                 target_step_id="fetch_url", target_field_path="formats"),
        DataEdge(source_step_id="fetch_url", source_field_path="markdown",
                 target_step_id="digest", target_field_path="markdown"),
        DataEdge(source_step_id=INPUT_SOURCE, source_field_path="recipient",
                 target_step_id="send_email", target_field_path="recipient_email"),
        DataEdge(source_step_id="fetch_url", source_field_path="metadata.title",
                 target_step_id="send_email", target_field_path="subject", transform="string"),
        DataEdge(source_step_id="digest", source_field_path="summary",
                 target_step_id="send_email", target_field_path="body"),
        DataEdge(source_step_id="send_email", source_field_path="id",
                 target_step_id=OUTPUT_TARGET, target_field_path="message_id"),
        DataEdge(source_step_id="digest", source_field_path="paragraph_count",
                 target_step_id=OUTPUT_TARGET, target_field_path="paragraphs"),
    ]

    return WorkflowDefinition(
        id=URL_DIGEST_ID,
        name="URL Digest",
        description="Scrape a web page and email a short digest of it",
        nodes=nodes,
        edges=edges,
        input_schema={
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "recipient": {"type": "string"},
            },
            "required": ["url", "recipient"],
        },
    )
