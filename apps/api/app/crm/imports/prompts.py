"""Prompt text for the extraction model.

The entity schemas and column-name heuristics here are tuning, not logic: changing them alters
what the model tends to return, never how the pipeline treats what it returns.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date

from app.crm.imports.coercion import MALFORMED_JSON, TRUNCATED, WRONG_SHAPE
from app.crm.schemas import PipelineStageOption


IMPORT_RETRY_HINTS = {
    TRUNCATED: (
        "CRITICAL: Your previous response was truncated because it was too long. You MUST produce "
        "shorter output. Focus on the most important entities only. Limit to the first 50 rows of "
        "data if needed. Return ONLY valid JSON."
    ),
    MALFORMED_JSON: (
        "CRITICAL: Your previous response was not valid JSON. Return ONLY the raw JSON object. "
        "Start your response with { and end with }. No markdown code fences, no explanatory text."
    ),
    WRONG_SHAPE: (
        "IMPORTANT: You must return ONLY valid JSON. No markdown, no code fences, no explanatory "
        "text. Start with { and end with }. Just the raw JSON object."
    ),
}

TRANSCRIPT_RETRY_HINTS = {
    TRUNCATED: (
        "CRITICAL: Your previous response was cut off because it was too long. Keep every task's "
        "notes to at most 4 sentences and return ONLY the JSON object."
    ),
    MALFORMED_JSON: (
        "CRITICAL: Your previous response was not valid JSON. Return ONLY the raw JSON object with "
        '"tasks" and "summary". Start with { and end with }. No markdown, no commentary.'
    ),
    WRONG_SHAPE: (
        'IMPORTANT: Your previous response had no tasks. Return a JSON object whose "tasks" array '
        "lists every actionable item from the transcript, even small ones."
    ),
}


_IMPORT_SYSTEM_PROMPT = """You are a CRM data import specialist. Your job is to extract structured CRM entities from raw file data (CSV, JSON, or free text) and return them as a single valid JSON object.

## TARGET ENTITY SCHEMAS

### Companies
Required: company_name
Optional: domain, industry, employee_count_range, annual_revenue_range, phone, website, description, address (object with street/city/state/zip/country), tags (string array)

### Contacts
Required: first_name, last_name
Optional: email, phone, job_title, lifecycle_stage, source, address, social_profiles (linkedin/twitter), tags
Valid lifecycle_stage values: "Lead", "Marketing Qualified", "Sales Qualified", "Opportunity", "Customer", "Evangelist", "Other"
Valid source values: "Inbound", "Outbound", "Referral", "Partner", "Event", "Website", "Other"

### Deals
Required: title
Optional: value (number), currency (3-letter code, default "USD"), stage_id, expected_close_date (YYYY-MM-DD), probability (0-100), priority, source, description, tags
Valid priority values: "Low", "Medium", "High", "Critical"

### Notes
Required: plain_text
Optional: title, tags

### Tasks
Required: title
Optional: status, priority, task_type, due_date (YYYY-MM-DD), notes, category
Valid status values: "To Do", "In Progress", "Done", "Cancelled"
Valid priority values: "Low", "Medium", "High", "Urgent"
Valid task_type values: "Call", "Email", "Meeting", "Follow-Up", "Demo", "Proposal", "Other"
Valid category values: "deal", "personal", "workshop", "other"

## EXISTING PIPELINE STAGES
{stage_list}

## RELATIONSHIP RULES

1. Assign each entity a unique _tempId like "company_0", "contact_0", "deal_0", "note_0", "task_0".
2. If a contact row mentions a company, create both entities and set _companyTempId on the contact to the company's _tempId.
3. If a deal mentions a contact name or email, set _contactTempId on the deal to that contact's _tempId.
4. If a deal mentions a company, set _companyTempId on the deal to that company's _tempId.
5. If a note or task is clearly associated with a deal, contact or company, set _dealTempId, _contactTempId or _companyTempId.
6. If the same company appears across several rows, create only ONE company entity and reference it by its _tempId. De-duplicate contacts by email when possible.
7. For each deal, set _stageName to the original status/stage value. If it matches one of the existing pipeline stages above, set stage_id to that stage's id, otherwise set stage_id to null.

## DATA PARSING RULES

1. CSV: auto-detect the delimiter. Map column names by meaning, e.g. "Organization"/"Account Name" -> company_name, "Amount"/"ACV" -> deal value, "Full Name" -> split into first_name + last_name, "Stage"/"Status" -> _stageName, "Close Date" -> expected_close_date. Ignore owner/assignee columns. Skip rows that cannot be interpreted and report them in warnings.
2. JSON: handle both flat arrays and nested structures.
3. Free text: do best-effort extraction from meeting notes, email threads and similar text.
4. Numbers: strip currency symbols, thousands separators and whitespace.
5. Dates: parse flexibly and output YYYY-MM-DD.
6. Skip rows that are totals, summaries or empty headers.
7. For large inputs prefer fewer well-parsed entities over many with errors. The JSON must be complete and valid.

## OUTPUT FORMAT

Return ONLY a single valid JSON object with this structure:

{{
  "companies": [{{"_tempId": "company_0", "company_name": "Acme Corp", "domain": "acme.com"}}],
  "contacts": [{{"_tempId": "contact_0", "_companyTempId": "company_0", "first_name": "John", "last_name": "Doe", "email": "john@acme.com"}}],
  "deals": [{{"_tempId": "deal_0", "_contactTempId": "contact_0", "_companyTempId": "company_0", "_stageName": "Discovery", "title": "Acme Enterprise Deal", "value": 50000, "currency": "USD", "stage_id": null}}],
  "notes": [{{"_tempId": "note_0", "_dealTempId": "deal_0", "title": "Initial call notes", "plain_text": "Discussed requirements..."}}],
  "tasks": [{{"_tempId": "task_0", "_dealTempId": "deal_0", "title": "Follow up with John", "task_type": "Follow-Up", "due_date": "2025-02-15"}}],
  "stageMappings": {{"Discovery": "stage-id-or-null"}},
  "warnings": ["2 contacts had no email address"],
  "summary": "Found 1 company, 1 contact, 1 deal, 1 note, 1 task"
}}

CRITICAL OUTPUT RULES:
- Your ENTIRE response must be ONLY the JSON object, starting with {{ and ending with }}.
- Do NOT wrap the JSON in markdown code fences and do not add commentary.
- Every entity must have a _tempId.
- Use null for missing optional fields.
- Return empty arrays for entity types the data does not contain."""


TRANSCRIPT_SYSTEM_PROMPT = """You are an AI assistant that analyzes meeting transcripts to extract actionable tasks for a CRM system used by a digital services agency.

Given a meeting transcript, identify ALL actionable items, follow-ups, commitments, deliverables, and next steps discussed.

For each task, provide:
- title: a clear, actionable task title in imperative form.
- task_type: the most specific of "Call", "Email", "Meeting", "Follow-Up", "Demo", "Proposal", "Automations", "Website Development", "Custom Development", "Training", "Consulting", "Other".
- priority: one of "Low", "Medium", "High", "Urgent", inferred from urgency cues in the conversation.
- due_date: "YYYY-MM-DD" when a date or relative timeframe is mentioned (resolve relative dates from today's date), otherwise null.
- notes: a detailed description (3-8 sentences) covering what needs to be done, why, constraints the client mentioned, tools involved, dependencies and expected outcome. Never null.

Also include a 3-5 sentence "summary" of the meeting covering key topics, decisions and outcomes.

Respond with ONLY valid JSON in this exact format (no markdown, no explanation):
{
  "tasks": [
    {"title": "string", "task_type": "Call", "priority": "Medium", "due_date": "YYYY-MM-DD or null", "notes": "string"}
  ],
  "summary": "string"
}"""


def build_import_system_prompt(stages: Sequence[PipelineStageOption]) -> str:
    stage_list = "\n".join(f'  - "{stage.name}" (id: {stage.id})' for stage in stages)
    return _IMPORT_SYSTEM_PROMPT.format(stage_list=stage_list or "  (no stages available)")


def build_import_user_prompt(content: str, file_type: str, file_name: str) -> str:
    return (
        f"Parse the following {file_type.upper()} file ({file_name}) and extract all CRM entities.\n\n"
        f"--- FILE CONTENT ---\n{content}\n--- END FILE CONTENT ---\n\n"
        "Extract all companies, contacts, deals, notes, and tasks. Infer relationships between them. "
        "Map deal stages to the existing pipeline stages when possible. Return the result as a single "
        "JSON object matching the specified schema."
    )


def build_transcript_user_prompt(transcript: str, deal_title: str | None, today: date) -> str:
    deal_context = f' This meeting is about the deal: "{deal_title}".' if deal_title else ""
    return f"Today's date is {today.isoformat()}.{deal_context}\n\nMeeting Transcript:\n\n{transcript}"


def with_retry_hint(user_prompt: str, hint: str) -> str:
    return f"{user_prompt}\n\n{hint}"
