"""External collaborators the client core talks to: the news API, audio, cancellation."""
