from typing import Dict, List, Any


class ToolRegistry:
    """Registry of engine tools advertised in the Tools layer"""

    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}
        self._initialize_builtin_tools()

    def _initialize_builtin_tools(self):
        """Register the tools the engine ships with"""

        builtin_tools = [
            {
                "id": "file_processor",
                "name": "File Processor",
                "description": "Multi-modal file processing and analysis",
                "category": "files",
                "status": "available",
                "capabilities": ["document parsing", "image analysis", "video processing", "audio transcription"],
                "keywords": ["file", "upload", "document", "pdf", "image", "video", "audio", "parse"]
            },
            {
                "id": "context_optimizer",
                "name": "Context Optimizer",
                "description": "Dynamic context compression and optimization",
                "category": "context",
                "status": "available",
                "capabilities": ["context pruning", "relevance scoring", "token optimization"],
                "keywords": ["context", "compress", "optimize", "tokens", "layer", "budget"]
            },
            {
                "id": "memory_manager",
                "name": "Memory Manager",
                "description": "Three-tier memory system management",
                "category": "memory",
                "status": "available",
                "capabilities": ["memory storage", "semantic search", "memory consolidation"],
                "keywords": ["memory", "remember", "recall", "forget", "history"]
            },
            {
                "id": "embedding_generator",
                "name": "Embedding Generator",
                "description": "Generate and manage embeddings for content",
                "category": "embeddings",
                "status": "available",
                "capabilities": ["text embeddings", "image embeddings", "multimodal embeddings"],
                "keywords": ["embedding", "embeddings", "vector", "similarity", "semantic"]
            }
        ]

        for tool in builtin_tools:
            self.register_tool(tool)

    def register_tool(self, tool_config: Dict[str, Any]):
        """Register a new tool"""

        self.tools[tool_config["id"]] = tool_config

    def get_available_tools(self) -> List[Dict[str, Any]]:
        """Get all available tools"""

        return list(self.tools.values())
