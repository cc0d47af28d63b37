# coding=utf-8

from .tts import VOICE_MAP, SpeechSynthesisBridge, voice_for

__all__ = ["SpeechSynthesisBridge", "VOICE_MAP", "voice_for"]
