"""Operator interaction: credentials and one-time codes."""

import getpass


class ConsolePrompt:
    """Ask on the controlling terminal. Secret prompts are not echoed."""

    def __call__(self, message: str, secret: bool = False) -> str:
        if secret:
            return getpass.getpass(message).strip()
        return input(message).strip()
