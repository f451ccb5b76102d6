"""Real-time media helpers: RTP sample building, jitter buffering, Ogg/Opus reading, region lookup and A/V sync."""

__version__ = "0.1.0"