"""
Stage instructions.

User-supplied values are quoted inside <user_input> blocks so the model can
tell them apart from the directive. They only ever change the text of an
instruction; the tools a stage may use come from its AgentConfig.
"""

import re

_TAG_RE = re.compile(r"</?\s*user_input\s*>", re.IGNORECASE)


def quote_user_input(value: str) -> str:
    """Wrap untrusted text in a user_input block, stripping any embedded tags."""
    return f"<user_input>\n{_TAG_RE.sub('', value).strip()}\n</user_input>"


def build_lookup_instruction(email: str, problem_description: str, project_ref: str = "") -> str:
    project = f" {project_ref}" if project_ref else ""
    return f"""A user reported a problem.

User email:
{quote_user_input(email)}

Problem description:
{quote_user_input(problem_description)}

This is a read-only investigation. Do not modify any data, run migrations or
invoke edge functions that update anything; only examine the data.
1. Connect to the Supabase project{project} and look at the products, user_cart_items, and users tables.
2. In the 'users' table, find the record whose 'email' column matches the user email above and retrieve the complete user object or the relevant details for this user, including their cart items.
3. Once you have the user's information, report in detail what you found and how it relates to the stated problem.
"""


def build_issue_instruction(issue_context: str, email: str, repo: str) -> str:
    return f"""Based on the following context gathered from our data store:
---
{quote_user_input(issue_context)}
---
Create a GitHub issue on the repo {repo}.
The issue title should be: "User Issue: {_TAG_RE.sub('', email).strip()} - [Brief Summary of Problem]". Infer the brief summary from the context.
The issue body should contain all the details provided in the context above.
Create exactly one issue. Confirm the creation of the issue and provide the issue URL or number.
"""
