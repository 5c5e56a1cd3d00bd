"""Textual dashboard for shared demands."""
