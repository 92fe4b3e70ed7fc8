"""AI-authored media for nuggets (images and narration)."""
