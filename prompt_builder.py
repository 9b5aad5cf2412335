#!/usr/bin/env python3
"""
Review Prompt Builder for Kritiq Reviewer

Produces the exact instruction text sent to the model for one file.
Everything here is pure string assembly: same inputs, same prompt.

Layout of a prompt:
    1. Role preamble and review mode
    2. Output contract (full file, no prose, no fences, original if clean)
    3. Change rules, including the KRITIQ FIX marker in the file's own
       comment syntax
    4. Fix scope whitelist
    5. Guarded end-to-end completion rules
    6. Language checklist picked from the extension
    7. Sibling project files
    8. The source text itself
"""

import os
from typing import Dict, Sequence

FIX_MARKER = "KRITIQ FIX"

RULE = "─" * 40

# Extension -> comment template for the traceability marker
_COMMENT_STYLES: Dict[str, str] = {
    '.py': "# {marker}: <short reason>",
    '.html': "<!-- {marker}: <short reason> -->",
    '.css': "/* {marker}: <short reason> */",
}
_DEFAULT_COMMENT_STYLE = "// {marker}: <short reason>"

WEB_CHECKLIST = """\
• undefined/null property access and unchecked DOM lookups
• == vs === comparisons that change behavior
• unawaited promises and missing error handling on async calls
• innerHTML, eval or new Function fed with untrusted input
• event listeners bound to elements that do not exist
• deprecated HTML tags and attributes, invalid CSS properties"""

PYTHON_CHECKLIST = """\
• NameError/AttributeError from typos or missing imports
• mutable default arguments
• bare except clauses that hide errors
• files or sockets opened without being closed
• eval/exec/pickle/subprocess(shell=True) on untrusted input
• wrong indentation that changes control flow"""

C_CHECKLIST = """\
• buffer overflows (strcpy, sprintf, gets, unchecked array indexes)
• NULL dereferences and unchecked malloc/fopen results
• memory leaks and double frees on error paths
• off-by-one errors in loops and string termination
• format string bugs in printf-family calls
• signed/unsigned comparison mistakes"""

JAVA_CHECKLIST = """\
• NullPointerException risks on unchecked references
• == used to compare strings or boxed values
• resources not closed (use try-with-resources)
• swallowed exceptions in empty catch blocks
• SQL built by string concatenation
• integer overflow and unchecked casts"""

DEFAULT_CHECKLIST = """\
• syntax errors and obvious typos
• runtime errors from missing or misspelled identifiers
• unsafe handling of external input
• logic that contradicts the surrounding code's evident intent"""

_CHECKLISTS: Dict[str, str] = {
    '.js': WEB_CHECKLIST,
    '.jsx': WEB_CHECKLIST,
    '.ts': WEB_CHECKLIST,
    '.tsx': WEB_CHECKLIST,
    '.html': WEB_CHECKLIST,
    '.css': WEB_CHECKLIST,
    '.py': PYTHON_CHECKLIST,
    '.c': C_CHECKLIST,
    '.cpp': C_CHECKLIST,
    '.h': C_CHECKLIST,
    '.java': JAVA_CHECKLIST,
}


def checklist_for(extension: str) -> str:
    """Return the language checklist for an extension. Total over all inputs."""
    return _CHECKLISTS.get(extension, DEFAULT_CHECKLIST)


def marker_comment_for(extension: str) -> str:
    """Return the KRITIQ FIX marker written in the extension's comment syntax."""
    return _COMMENT_STYLES.get(extension, _DEFAULT_COMMENT_STYLE).format(marker=FIX_MARKER)


def _section(title: str) -> str:
    return f"{RULE}\n{title}\n{RULE}"


class ReviewPromptBuilder:
    """Builds the per-file review prompt."""

    def build(
        self,
        file_content: str,
        file_name: str,
        project_file_names: Sequence[str],
        mode: str = "Standard",
    ) -> str:
        """
        Build the prompt for one file.

        Args:
            file_content: Full source text under review
            file_name: Base name of the file
            project_file_names: Base names of the other files in the batch
            mode: Review mode label, passed through verbatim

        Returns:
            Prompt text
        """
        ext = os.path.splitext(file_name)[1]
        marker = marker_comment_for(ext)
        project_structure = "\n".join(f"- {name}" for name in project_file_names) or "- (none)"

        return f"""SYSTEM ROLE:
You are KRITIQ, a senior-level code editor and reviewer.
You are NOT a chatbot. You are a deterministic reviewer whose output is written directly to files.
Your priority order is: SAFETY > CORRECTNESS > MINIMAL CHANGE > CLARITY.

REVIEW MODE: {mode}

TASK:
Review and fix bugs in the provided source file: {file_name}

You are operating under STRICT engineering constraints.

{_section("CRITICAL OUTPUT CONTRACT (NON-NEGOTIABLE)")}
1. OUTPUT ONLY VALID SOURCE CODE.
   - Do NOT use markdown.
   - Do NOT include explanations outside code.
   - Do NOT wrap output in ``` blocks.
   - Any extra text will BREAK the program.

2. RETURN THE FULL FILE CONTENT.
   - Do NOT omit lines.
   - Do NOT summarize.
   - Do NOT use placeholders like "...rest of code".

3. IF NO ISSUES ARE FOUND:
   - Return the ORIGINAL CODE verbatim, byte-for-byte.

{_section("CHANGE RULES (TRUST & TRANSPARENCY)")}
4. MAKE ONLY NECESSARY CHANGES.
   - Do NOT refactor for style.
   - Do NOT reformat.
   - Do NOT rename symbols unless they are clearly broken or misspelled.

5. EVERY CHANGE MUST BE TRACEABLE.
   - On the SAME LINE where a fix is applied, add:
     {marker}
   - Do NOT add file-level or summary comments.

6. PRESERVE PUBLIC CONTRACTS.
   - Do NOT change exported functions, classes, or APIs.

{_section("WHAT TO FIX (FOCUSED SCOPE)")}
ONLY fix the following categories:

• Syntax errors (missing brackets, invalid tokens)
• Clear typos (e.g., backgroud → background)
• Runtime errors (null/undefined access, type errors)
• Security risks (eval, unsafe input handling, hardcoded secrets)
• Deprecated or invalid constructs (e.g., <center>)
• Broken logic that causes incorrect behavior

{_section("CONDITIONAL END-TO-END COMPLETION (STRICTLY GUARDED)")}
You may complete an implementation across related files ONLY IF ALL of these hold:

1. The files together clearly represent a single feature or mini-application.
2. The intent of the feature is obvious from the code structure, naming, and UI elements.
3. The implementation is clearly incomplete, broken, or non-functional.
4. The expected behavior is standard and unambiguous to any developer.
5. UI/CSS that is complete and intentional is left untouched; partial UI is
   completed following the existing design direction.
6. Structure, classes and IDs are not changed unless clearly broken.

WHEN these conditions are met:
• You MAY complete missing logic so the feature works correctly.
• You MUST NOT introduce new features beyond the obvious intent.
• You MUST add "{FIX_MARKER}" comments on EVERY modified or newly added line.

IF ANY condition above is NOT met:
→ Fall back to minimal bug fixing only.
→ If uncertain, return the original code unchanged.

{_section("LANGUAGE CHECKLIST")}
{checklist_for(ext)}

{_section("PROJECT CONTEXT (READ-ONLY)")}
The following files exist in the same project.
Do not break imports or references to them.
{project_structure}

{_section("SOURCE CODE TO REVIEW")}
{file_content}
"""
