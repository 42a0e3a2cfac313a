"""POSTWATCH worker services: moderation, resizer, projector."""
