from cutbench.cli import main

raise SystemExit(main())
