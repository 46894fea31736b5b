"""
Heuristic project requirement analysis used to pick agent roles.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Complexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class ProjectRequirements:
    """What a project needs, as far as role assignment cares."""

    complexity: Complexity = Complexity.MEDIUM
    domains: list[str] = field(default_factory=list)
    tech_stack: list[str] = field(default_factory=list)
    project_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "complexity": self.complexity.value,
            "domains": list(self.domains),
            "tech_stack": list(self.tech_stack),
            "project_type": self.project_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectRequirements:
        return cls(
            complexity=Complexity(str(data.get("complexity") or "medium").lower()),
            domains=[str(d).lower() for d in data.get("domains") or []],
            tech_stack=[str(t).lower() for t in data.get("tech_stack") or data.get("techStack") or []],
            project_type=data.get("project_type") or data.get("projectType"),
        )


TECH_DOMAINS: dict[str, str] = {
    "fastapi": "backend",
    "django": "backend",
    "flask": "backend",
    "express": "backend",
    "node": "backend",
    "postgres": "backend",
    "postgresql": "backend",
    "graphql": "backend",
    "react": "frontend",
    "vue": "frontend",
    "svelte": "frontend",
    "angular": "frontend",
    "tailwind": "frontend",
    "next.js": "frontend",
    "jest": "testing",
    "pytest": "testing",
    "vitest": "testing",
    "cypress": "testing",
    "playwright": "testing",
    "docker": "devops",
    "kubernetes": "devops",
    "terraform": "devops",
}

DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "backend": ("api", "backend", "server", "database", "endpoint", "auth"),
    "frontend": ("ui", "frontend", "website", "page", "component", "css", "landing"),
    "testing": ("test", "tests", "testing", "coverage", "qa"),
    "devops": ("deploy", "deployment", "ci", "pipeline", "container"),
    "mobile": ("mobile", "ios", "android"),
}


class RequirementsAnalyzer:
    """Derives ProjectRequirements from a free-text request."""

    HIGH_KEYWORDS = {
        "architecture",
        "microservice",
        "microservices",
        "distributed",
        "real-time",
        "realtime",
        "authentication",
        "payment",
        "scalability",
        "migration",
        "multi-tenant",
    }

    LOW_KEYWORDS = {
        "typo",
        "rename",
        "landing page",
        "static",
        "hello world",
        "simple",
        "readme",
        "small",
    }

    PROJECT_TYPES = {
        "web_app": ("app", "application", "dashboard"),
        "website": ("website", "landing page", "portfolio", "blog"),
        "api": ("api", "service", "endpoint"),
        "cli": ("cli", "command line", "command-line"),
    }

    def analyze(self, text: str) -> ProjectRequirements:
        lowered = text.lower()
        words = {w.strip(".") for w in re.findall(r"[a-z0-9.+#-]+", lowered)}

        tech_stack = sorted(tech for tech in TECH_DOMAINS if tech in words)
        domains = {TECH_DOMAINS[tech] for tech in tech_stack}
        for domain, keywords in DOMAIN_KEYWORDS.items():
            if any(kw in words for kw in keywords):
                domains.add(domain)

        return ProjectRequirements(
            complexity=self._complexity(lowered, len(domains)),
            domains=sorted(domains),
            tech_stack=tech_stack,
            project_type=self._project_type(lowered),
        )

    def _complexity(self, text: str, domain_count: int) -> Complexity:
        high = sum(1 for kw in self.HIGH_KEYWORDS if kw in text)
        low = sum(1 for kw in self.LOW_KEYWORDS if kw in text)

        if high > low or domain_count >= 3:
            return Complexity.HIGH
        if low > high:
            return Complexity.LOW
        return Complexity.MEDIUM

    def _project_type(self, text: str) -> str | None:
        for project_type, keywords in self.PROJECT_TYPES.items():
            if any(re.search(rf"\b{re.escape(kw)}\b", text) for kw in keywords):
                return project_type
        return None


def enrich_domains(requirements: ProjectRequirements) -> ProjectRequirements:
    """Add the domains implied by the tech stack."""
    domains = set(requirements.domains)
    for tech in requirements.tech_stack:
        domain = TECH_DOMAINS.get(tech.lower())
        if domain:
            domains.add(domain)
    requirements.domains = sorted(domains)
    return requirements
