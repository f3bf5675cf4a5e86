"""SkillGrid Gateway — access control and synchronization layer for the skill hierarchy."""

__version__ = "0.1.0"
