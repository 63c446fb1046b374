"""PaperTalk exam grading backend."""
