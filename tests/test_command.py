import sys

import pytest

from paperdeck.errors import CommandError
from paperdeck.services.command import run_command


async def test_captures_stdout(tmp_path):
    result = await run_command([sys.executable, "-c", "import os; print(os.getcwd())"], cwd=tmp_path)
    assert result.stdout.strip() == str(tmp_path.resolve())
    assert result.stderr == ""


async def test_non_zero_exit_carries_stderr():
    script = "import sys; sys.stderr.write('Invalid data found when processing input'); sys.exit(3)"
    with pytest.raises(CommandError) as info:
        await run_command([sys.executable, "-c", script])

    assert info.value.returncode == 3
    assert "Invalid data found" in str(info.value)


async def test_missing_binary():
    with pytest.raises(CommandError, match="could not start"):
        await run_command(["/nonexistent/ffmpeg-binary", "-version"])


async def test_timeout_kills_process():
    with pytest.raises(CommandError, match="timed out"):
        await run_command([sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.2)
