GENERATE_PROMPT = """
You are a conversational flow designer. Produce the complete flow document for the bot described below.

OUTPUT FORMAT (CRITICAL):
- Return ONLY a CSV table inside a ```csv fenced block. No prose before or after.
- The first line MUST be exactly this header:
{header}
- Every row MUST have exactly {field_count} comma separated fields, in header order.
  Leave unused fields empty; never drop a column.
- Quote a field with double quotes when it contains a comma, a double quote or a line break;
  double any double quote inside a quoted field.
- Node Type is D (decision) or A (action). Node Number is a unique integer.
- Next Nodes is a comma separated list of node numbers (quote the field when it has more than one).
- What Next? uses value~node pairs joined by | (for example true~105|false~106|error~99990).
  Every action node MUST route an error path.
- Rich Asset Content for structured widgets is compact JSON.
- Messages must not contain * or = and should stay under {max_message_chars} characters.
- Include the system nodes -500 (start), 666 (fallback), 1800 (end chat) and 99990 (error handling).

Bot configuration:
```
{config}
```

Answers already collected from the customer:
```
{prior_answers}
```

Reference material (platform documentation, follow it where it applies):
```
{reference_material}
```
"""


REPAIR_ROWS_PROMPT = """
You are fixing rows of a conversational flow document that the bot compiler rejected.

Fix ONLY the rows listed under "Rows to fix". Return every one of them, corrected,
with the same Node Number, and nothing else.

Rules:
- Each returned row MUST have exactly {field_count} comma separated fields in this header order:
{header}
- Quote fields containing commas, double quotes or line breaks; double inner quotes.
- Do not add, remove or renumber nodes. Routing may only point at node numbers that already exist.
- Context rows are READ-ONLY. They are shown so you can see the neighbouring flow; never return them.

{known_fixes}

Compiler errors:
{errors}

Rows to fix:
```csv
{header}
{broken_rows}
```

Context rows (READ-ONLY, do not return):
```csv
{context_rows}
```

Return the corrected rows inside a single ```csv fenced block, header line first.
"""


REPAIR_DOCUMENT_PROMPT = """
You are fixing a conversational flow document that the bot compiler rejected.

Most of the document has errors, so you receive all of it. Correct the rows named in the
errors below; keep every other row exactly as it is. Do not add, remove or renumber nodes.

Rules:
- Every row MUST have exactly {field_count} comma separated fields in header order.
- Quote fields containing commas, double quotes or line breaks; double inner quotes.

{known_fixes}

Compiler errors:
{errors}

Document:
```csv
{document}
```

Return the complete corrected document inside a single ```csv fenced block, header line first.
"""
