from __future__ import annotations

import os
import queue
import select
import sys
import termios
import threading
import tty

UP = "UP"
DOWN = "DOWN"
HOME = "HOME"
END = "END"
PGUP = "PGUP"
PGDN = "PGDN"
ENTER = "ENTER"
BACKSPACE = "BACKSPACE"
ESC = "ESC"
TAB = "TAB"
SHTAB = "SHTAB"
CTRL_P = "CTRL_P"
QUIT = "QUIT"

ESCAPE_SEQUENCES = {
    "[A": UP,
    "[B": DOWN,
    "OA": UP,
    "OB": DOWN,
    "[H": HOME,
    "[F": END,
    "OH": HOME,
    "OF": END,
    "[1~": HOME,
    "[4~": END,
    "[5~": PGUP,
    "[6~": PGDN,
    "[Z": SHTAB,
}

CONTROL_KEYS = {
    "\r": ENTER,
    "\n": ENTER,
    "\t": TAB,
    "\x7f": BACKSPACE,
    "\b": BACKSPACE,
    "\x03": QUIT,
    "\x10": CTRL_P,
}


def decode_key(char: str, sequence: str = "") -> str | None:
    if char == "\x1b":
        return ESCAPE_SEQUENCES.get(sequence, ESC)
    if char in CONTROL_KEYS:
        return CONTROL_KEYS[char]
    if char.isprintable():
        return char
    return None


def is_printable_key(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


def _read_escape_sequence(fd: int) -> str:
    sequence = ""
    while select.select([fd], [], [], 0.001)[0]:
        sequence += os.read(fd, 1).decode("utf-8", errors="ignore")
        if not sequence:
            continue
        if sequence[-1].isalpha() or sequence.endswith("~") or len(sequence) >= 6:
            break
    return sequence


def _line_input_worker(key_queue: queue.Queue[str], stop_event: threading.Event) -> None:
    while not stop_event.is_set():
        try:
            line = sys.stdin.readline()
        except Exception:
            if stop_event.wait(0.2):
                break
            continue
        if line == "":
            if stop_event.wait(0.2):
                break
            continue
        for char in line.rstrip("\n"):
            key = decode_key(char)
            if key:
                key_queue.put(key)
        key_queue.put(ENTER)


def key_input_worker(key_queue: queue.Queue[str], stop_event: threading.Event) -> None:
    if not sys.stdin.isatty():
        _line_input_worker(key_queue, stop_event)
        return

    try:
        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
    except Exception:
        _line_input_worker(key_queue, stop_event)
        return

    try:
        tty.setcbreak(fd)
        pending = b""
        while not stop_event.is_set():
            ready, _, _ = select.select([fd], [], [], 0.2)
            if not ready:
                continue
            data = os.read(fd, 1)
            if not data:
                continue
            pending += data
            try:
                char = pending.decode("utf-8")
            except UnicodeDecodeError:
                # multi-byte character still arriving
                if len(pending) < 4:
                    continue
                pending = b""
                continue
            pending = b""
            sequence = _read_escape_sequence(fd) if char == "\x1b" else ""
            key = decode_key(char, sequence)
            if key:
                key_queue.put(key)
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        except Exception:
            pass
