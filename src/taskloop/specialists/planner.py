from __future__ import annotations

from taskloop.errors import PlanningError
from taskloop.models import TaskContext
from taskloop.specialists.base import SpecialistAgent


class PlannerAgent(SpecialistAgent):
    role = "planner"
    system_prompt = """
You are the Planner specialist.
Analyze the task, its requirements and the previous iterations,
then list the concrete steps for the next iteration, one step per line.
You produce plans, not code.
""".strip()

    @staticmethod
    def build_prompt(context: TaskContext) -> str:
        task = context.task
        lines = [
            f"Task: {task.title}",
            f"Description: {task.description}",
            f"Requirements: {', '.join(task.requirements)}",
            f"Progress: {context.progress:.0f}%",
            f"Previous iterations: {len(context.iterations)}",
        ]
        latest = context.latest_evaluation
        if latest is not None and latest.suggestions:
            lines.append(
                "Open suggestions: " + "; ".join(item.message for item in latest.suggestions[:5])
            )
        lines.append("")
        lines.append("Generate a detailed execution plan for the next iteration.")
        return "\n".join(lines)

    async def plan(self, context: TaskContext) -> str:
        response = await self.run(self.build_prompt(context))
        if not response.content.strip():
            raise PlanningError(f"Planner produced no plan for task {context.task.id}")
        return response.content
