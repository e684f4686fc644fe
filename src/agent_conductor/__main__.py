from agent_conductor.cli import main

main()
