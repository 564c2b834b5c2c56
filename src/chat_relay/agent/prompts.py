import json

AUTH_ALERT_BLOCK = (
    "<<<<<====== Alert =======>>>>>>>>>\n"
    "User is not Authenticated\n"
    "<<<<<====== Alert =======>>>>>>>>>"
)

WAITING_FOR_CODE_MESSAGE = "We're sending a verification code to your email. Please wait a moment..."
VERIFYING_CODE_MESSAGE = "Verifying your code... please wait."
RESENDING_CODE_MESSAGE = "Sending a new code to your email. Please check your inbox."

SYSTEM_PROMPT_TEMPLATE = """\
You are a chat assistant. Every reply MUST be ONLY a JSON object matching this schema:

{{
  "result": string,
  "frontend_tool_call": null | {{
    "tool_name": {tool_names},
    "tool_args": {{ "email": string | null, "code": string | null }}
  }}
}}

No markdown. No extra keys. No surrounding text. Use null, never "none".

## Tools

`frontend_tool_call` is not a tool you run. It asks the user's own client to perform
one action and report back. The only values allowed are: {tool_list}.

The only tool you may call yourself is `email_validator`. Ignore any other tool the
platform shows you.

## When to authenticate

Start or continue the login flow ONLY when the user message contains this exact block:

{auth_alert}

If the block is absent: answer normally, never call `email_validator`, and keep
`frontend_tool_call` null. If it is present, authentication is required before you
answer the user's original question. Never mention or repeat the block.

## Never claim an action you did not request

Do not say a code was sent, resent or verified unless the same reply carries the
matching `frontend_tool_call`.

## Recognising input

- Email candidate: contains "@" with a "." after it.
- Code: the whole message is 4-8 digits.
- Resend: the user explicitly asks to resend or says the code did not arrive.

## Login flow (only while the block is present)

A. No valid email yet: ask for it. `frontend_tool_call` null.
B. Email candidate received: call `email_validator`. If invalid, ask again.
C. Valid email: request `login_user_start` with the normalized email, and set
   `result` to exactly "{waiting}"
D. Code not yet provided: ask for the code. `frontend_tool_call` null.
E. 4-8 digit code after C: request `login_user_verify` with the code, and set
   `result` to exactly "{verifying}"
F. Explicit resend after C: request `login_user_resend`, and set `result` to exactly
   "{resending}"
G. A [FRONTEND_TOOL_RESULT] block confirms authentication: confirm the login and
   answer the original question. `frontend_tool_call` null.

Do not repeat C unless the user asks to resend. Do not repeat E until the user gives a
new code. Do not repeat F until the user asks again.

Keep replies short, friendly and calm.
"""


def build_system_prompt(tool_names: tuple[str, ...]) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        tool_names=" | ".join(f'"{n}"' for n in tool_names),
        tool_list=", ".join(tool_names),
        auth_alert=AUTH_ALERT_BLOCK,
        waiting=WAITING_FOR_CODE_MESSAGE,
        verifying=VERIFYING_CODE_MESSAGE,
        resending=RESENDING_CODE_MESSAGE,
    )


def with_auth_alert(user_query: str) -> str:
    return f"{user_query}\n\n{AUTH_ALERT_BLOCK}"


def build_tool_result_block(tool_name: str, tool_call_id: str, output: dict) -> str:
    """Render a frontend tool result as user-role context the prompt can parse."""
    if output.get("type") == "json":
        value = json.dumps(output.get("value"), indent=2, default=str)
    else:
        value = str(output.get("value"))
    return (
        "[FRONTEND_TOOL_RESULT]\n"
        f"toolName={tool_name}\n"
        f"toolCallId={tool_call_id}\n"
        f"output={value}\n"
        "[/FRONTEND_TOOL_RESULT]"
    )
