from typing import Dict, List, Any, Optional

EXAMPLE_CATEGORIES = ["context-engineering", "multi-modal", "conversation"]


class ExampleRegistry:
    """Few-shot examples surfaced in the Examples layer"""

    def __init__(self):
        self.examples: Dict[str, Dict[str, Any]] = {}
        self._initialize_builtin_examples()

    def _initialize_builtin_examples(self):
        builtin_examples = [
            {
                "id": "explain_context_layers",
                "name": "Explain context layers",
                "category": "context-engineering",
                "description": "Explain how the context window layers are assembled",
                "keywords": ["context", "layer", "layers", "window", "architecture"],
                "input": "How does the context window decide what to include?",
                "output": "Each request is assembled from eleven layers. Layers without "
                          "relevant data are marked inactive and cost almost nothing; "
                          "mandatory layers such as instructions and the query are always kept."
            },
            {
                "id": "summarize_document",
                "name": "Summarize an uploaded document",
                "category": "multi-modal",
                "description": "Summarize the key points of an uploaded file",
                "keywords": ["summarize", "summary", "file", "document", "upload", "pdf"],
                "input": "Summarize the report I uploaded.",
                "output": "The report covers three topics: ... Key figures: ... Open questions: ..."
            },
            {
                "id": "code_example",
                "name": "Code example",
                "category": "conversation",
                "description": "Answer with a short, runnable code example",
                "keywords": ["code", "example", "snippet", "function", "python"],
                "input": "Show me an example of reading a file line by line.",
                "output": "```python\nwith open(path) as handle:\n    for line in handle:\n        print(line)\n```"
            },
            {
                "id": "recall_memory",
                "name": "Recall earlier conversation",
                "category": "conversation",
                "description": "Use remembered facts from earlier in the conversation",
                "keywords": ["remember", "earlier", "before", "memory", "recall"],
                "input": "What did I tell you about my project earlier?",
                "output": "Earlier you mentioned that your project ..."
            }
        ]

        for example in builtin_examples:
            self.register_example(example)

    def register_example(self, example: Dict[str, Any]):
        self.examples[example["id"]] = example

    def get_examples(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        if category is None:
            return list(self.examples.values())
        return [e for e in self.examples.values() if e.get("category") == category]
