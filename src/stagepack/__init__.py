"""Source archiving and package assembly pipeline."""
