"""Tests for operator confirmation helpers."""
import asyncio
from unittest.mock import patch

import pytest

from src.rollout.deployment.confirmation import auto_confirm, confirm_unless_stopped, prompt_confirm


class TestPromptConfirm:
    """Test the terminal prompt."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer,expected", [("y", True), (" YES ", True), ("n", False), ("", False)])
    async def test_answers(self, answer, expected):
        """Test that only y/yes confirms."""
        with patch("builtins.input", return_value=answer):
            assert await prompt_confirm("Roll back?") is expected

    @pytest.mark.asyncio
    async def test_closed_stdin_declines(self):
        """Test that a closed stdin counts as a decline."""
        with patch("builtins.input", side_effect=EOFError):
            assert await prompt_confirm("Roll back?") is False


class TestConfirmUnlessStopped:
    """Test racing the operator against a stop request."""

    @pytest.mark.asyncio
    async def test_answer_returned(self):
        """Test that the operator's answer passes through."""
        assert await confirm_unless_stopped(auto_confirm, "Promote?", asyncio.Event()) is True

    @pytest.mark.asyncio
    async def test_stop_wins_over_unanswered_prompt(self):
        """Test that a stop request returns None and cancels the pending prompt."""
        stop = asyncio.Event()
        cancelled = asyncio.Event()

        async def unanswered(prompt):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.01, stop.set)
        answer = await asyncio.wait_for(confirm_unless_stopped(unanswered, "Roll back?", stop), timeout=5)

        assert answer is None
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_already_stopped_skips_prompt(self):
        """Test that no prompt is shown once a stop was requested."""
        stop = asyncio.Event()
        stop.set()
        prompts = []

        async def confirm(prompt):
            prompts.append(prompt)
            return True

        assert await confirm_unless_stopped(confirm, "Roll back?", stop) is None
        assert prompts == []
