# AuraVoice - conversational voice assistant
__version__ = "0.1.0"
