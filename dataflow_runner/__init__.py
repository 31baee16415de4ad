"""Run templatable playbooks of Hadoop/Spark/et al jobs on Amazon EMR."""

__version__ = "0.1.0"
