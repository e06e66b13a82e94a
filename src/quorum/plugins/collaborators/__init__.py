"""Built-in collaborators: json_questions, field_filter, question_mapper."""
