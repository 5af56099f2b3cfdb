"""Shell command builders for GPIO control and condition checks.

GPIO access goes through a one-shot `python3 -c` script using RPi.GPIO on the
device (BCM pin numbering). Every interpolated value is validated or quoted.
"""

import shlex

# BCM GPIO numbers exposed on the 40-pin header
MIN_BCM_PIN = 0
MAX_BCM_PIN = 27

_HIGH_WORDS = {"high", "on", "true", "1"}
_LOW_WORDS = {"low", "off", "false", "0"}


def validate_pin(pin: int) -> int:
    """Ensure pin is a BCM GPIO number."""
    if isinstance(pin, bool) or not isinstance(pin, int):
        raise ValueError(f"GPIO pin must be an integer, got {pin!r}")
    if not MIN_BCM_PIN <= pin <= MAX_BCM_PIN:
        raise ValueError(f"GPIO pin must be between {MIN_BCM_PIN} and {MAX_BCM_PIN}, got {pin}")
    return pin


def normalize_pin_state(state: bool | int | float | str) -> bool | float:
    """Normalize a requested pin state.

    Returns True/False for a digital level, or a float duty cycle (0-100) for PWM.
    Strings like "high"/"low" map to levels; numeric values are PWM duty cycles.
    """
    if isinstance(state, bool):
        return state
    if isinstance(state, str):
        word = state.strip().lower()
        if word in _HIGH_WORDS:
            return True
        if word in _LOW_WORDS:
            return False
        raise ValueError(f"Unknown pin state: {state!r}")
    if isinstance(state, (int, float)):
        duty = float(state)
        if not 0.0 <= duty <= 100.0:
            raise ValueError(f"PWM duty cycle must be between 0 and 100, got {state}")
        return duty
    raise ValueError(f"Unknown pin state: {state!r}")


def _python_command(script: str) -> str:
    return f"python3 -c {shlex.quote(script)}"


def build_gpio_write_command(
    pin: int, state: bool | float, frequency: float = 1000.0, duration: float = 1.0
) -> str:
    """Command that configures pin as output and writes a level or PWM duty cycle.

    PWM only lasts while the remote process is alive, so the script holds the
    duty cycle for `duration` seconds before exiting.
    """
    validate_pin(pin)
    lines = [
        "import RPi.GPIO as GPIO",
        "import time",
        "GPIO.setmode(GPIO.BCM)",
        "GPIO.setwarnings(False)",
        f"GPIO.setup({pin}, GPIO.OUT)",
    ]
    if isinstance(state, bool):
        level = "HIGH" if state else "LOW"
        lines += [
            f"GPIO.output({pin}, GPIO.{level})",
            f"print('GPIO pin {pin} set to {level}')",
        ]
    else:
        if frequency <= 0:
            raise ValueError(f"PWM frequency must be positive, got {frequency}")
        lines += [
            f"pwm = GPIO.PWM({pin}, {float(frequency)})",
            f"pwm.start({float(state)})",
            f"print('GPIO pin {pin} PWM duty cycle {float(state)}% at {float(frequency)}Hz')",
            f"time.sleep({max(float(duration), 0.0)})",
            "pwm.stop()",
        ]
    return _python_command("\n".join(lines))


def build_gpio_read_command(pin: int) -> str:
    """Command that configures pin as input and prints its level (0 or 1)."""
    validate_pin(pin)
    script = "\n".join(
        [
            "import RPi.GPIO as GPIO",
            "GPIO.setmode(GPIO.BCM)",
            "GPIO.setwarnings(False)",
            f"GPIO.setup({pin}, GPIO.IN)",
            f"print(GPIO.input({pin}))",
        ]
    )
    return _python_command(script)


def build_file_exists_command(path: str) -> str:
    """Command exiting 0 when path is an existing regular file."""
    return f"test -f {shlex.quote(path)}"
